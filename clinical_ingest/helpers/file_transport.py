import asyncio
import time
from pathlib import Path

from watchdog.events import PatternMatchingEventHandler
from watchdog.observers import Observer

from clinical_ingest.commons.logger import logger


def read_when_settled(path: Path, retries: int = 10, delay: float = 0.05) -> bytes:
    """Read a file that may still be being written; last failure propagates."""
    for _ in range(retries - 1):
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise
        except OSError:
            time.sleep(delay)
    return path.read_bytes()


class FileWatcher:
    """Hands every report dropped in `inbox` to an async callback (bytes, path)."""

    def __init__(
        self,
        inbox: str,
        glob: str,
        on_message_async,
        loop: asyncio.AbstractEventLoop,
        retries: int = 10,
    ):
        self.inbox = Path(inbox)
        self.inbox.mkdir(parents=True, exist_ok=True)
        self.loop = loop
        self.on_message_async = on_message_async
        self.handler = PatternMatchingEventHandler(patterns=[glob], ignore_directories=True)

        def _submit(path: Path):
            # moved away or already consumed
            if not path.exists():
                return
            try:
                data = read_when_settled(path, retries)
            except FileNotFoundError:
                return
            except OSError as ex:
                logger.error(f"Could not read {path}: {ex}")
                return
            asyncio.run_coroutine_threadsafe(self.on_message_async(data, str(path)), self.loop)

        # closed-after-write or renamed into the inbox; a bare "created" may still be empty
        self.handler.on_closed = lambda e: _submit(Path(e.src_path))
        self.handler.on_moved = lambda e: _submit(Path(e.dest_path))

        self.observer = Observer()

    def start(self):
        self.observer.schedule(self.handler, str(self.inbox), recursive=False)
        self.observer.start()

    def stop(self):
        self.observer.stop()
        self.observer.join()
