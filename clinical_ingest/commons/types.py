from typing import List, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class PathsCfg(BaseModel):
    logs_root: str = "logs"
    inbox: str = "data/inbox"
    archive: str = "data/archive"
    error: str = "data/error"
    review: str = "data/review"
    directory_file: str = "data/patients.json"
    users_file: str = "data/users.json"


class WeightsCfg(BaseModel):
    mrn: float = Field(0.2, ge=0.0)
    name: float = Field(0.5, ge=0.0)
    dob: float = Field(0.3, ge=0.0)

    @model_validator(mode="after")
    def _positive_total(self):
        if self.mrn + self.name + self.dob <= 0:
            raise ValueError("matching weights must not all be zero")
        return self


class MatchingCfg(BaseModel):
    threshold: float = Field(0.8, ge=0.0, le=1.0)
    tie_epsilon: float = Field(0.05, ge=0.0, le=1.0)
    weights: WeightsCfg = WeightsCfg()


class IngestCfg(BaseModel):
    robust: bool = True
    include_code_system: bool = False
    encodings: List[str] = ["utf-8-sig", "cp1252"]
    extensions: List[str] = [".hl7", ".txt", ".oru", ".pdf"]
    inbox_glob: str = "*.*"
    workers: int = Field(4, ge=1)
    read_retries: int = Field(10, ge=1)

    @field_validator("extensions")
    @classmethod
    def _lower(cls, v: List[str]):
        return [e.lower() if e.startswith(".") else "." + e.lower() for e in v]


class AuthCfg(BaseModel):
    roles: List[str] = ["doctor", "nurse", "admin"]
    upload_roles: List[str] = ["doctor", "nurse"]


class DirectoryCfg(BaseModel):
    lock_timeout_sec: float = Field(5.0, gt=0)


class Settings(BaseModel):
    app: dict = {}
    paths: PathsCfg = PathsCfg()
    matching: MatchingCfg = MatchingCfg()
    ingest: IngestCfg = IngestCfg()
    auth: AuthCfg = AuthCfg()
    directory: DirectoryCfg = DirectoryCfg()
    log_level: Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
