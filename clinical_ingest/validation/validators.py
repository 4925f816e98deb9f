from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinical_ingest.commons.errors import ErrorKind


class ObservationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    code: Optional[str] = None
    value: Optional[str] = None
    unit: Optional[str] = None
    reference_range: Optional[str] = Field(None, alias="referenceRange")
    abnormal_flag: Optional[str] = Field(None, alias="abnormalFlag")
    code_text: Optional[str] = Field(None, alias="codeText")
    code_system: Optional[str] = Field(None, alias="codeSystem")


class NamePayload(BaseModel):
    last: Optional[str] = None
    first: Optional[str] = None
    middle: Optional[str] = None


class IdentifiersPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    mrn: Optional[str] = None
    name: Optional[NamePayload] = None
    date_of_birth: Optional[str] = Field(None, alias="dateOfBirth")


class TransmissionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    report_id: str = Field(..., alias="reportId", min_length=1)
    report_date: str = Field(..., alias="reportDate", min_length=1)
    message_type: str = Field(..., alias="messageType", min_length=1)
    observations: List[ObservationPayload] = Field(..., min_length=1)
    patient_identifiers: IdentifiersPayload = Field(..., alias="patientIdentifiers")

    @field_validator("patient_identifiers")
    @classmethod
    def _not_trivial(cls, v: IdentifiersPayload):
        if not (v.mrn or v.name or v.date_of_birth):
            raise ValueError("patientIdentifiers needs at least one of mrn, name, dateOfBirth")
        return v


class ErrorPayload(BaseModel):
    kind: ErrorKind
    message: str
    line: Optional[int] = None


def validate_transmission_or_raise(payload: dict) -> TransmissionPayload:
    """Raises pydantic.ValidationError when the canonical schema is violated."""
    return TransmissionPayload.model_validate(payload)


def validate_error_or_raise(payload: dict) -> ErrorPayload:
    return ErrorPayload.model_validate(payload)
