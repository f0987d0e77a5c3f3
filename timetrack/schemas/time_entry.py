from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# A GPS fix record, or the list of them the store keeps.
Location = Union[dict[str, Any], list[dict[str, Any]]]


class TimeEntryCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    job_no: str = Field(min_length=1)
    job_name: str
    employee_name: Optional[str] = None
    account_no: Optional[str] = None
    account_name: Optional[str] = None
    comment: Optional[str] = None
    status: Optional[str] = None
    spire_status: Optional[str] = None
    total_seconds: Optional[int] = Field(default=None, ge=0)
    end_time: Optional[datetime] = None
    start_location: Optional[Location] = None
    end_location: Optional[Location] = None


class TimeEntryUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    job_no: Optional[str] = None
    job_name: Optional[str] = None
    employee_code: Optional[str] = None
    employee_name: Optional[str] = None
    account_no: Optional[str] = None
    account_name: Optional[str] = None
    comment: Optional[str] = None
    spire_status: Optional[str] = None
    status: Optional[str] = None
    total_seconds: Optional[int] = Field(default=None, ge=0)
    start_time: Optional[datetime] = None
    start_location: Optional[Location] = None
    end_location: Optional[Location] = None


class TimeEntryStop(BaseModel):
    """Optional overrides from the client's end confirmation."""

    total_seconds: Optional[int] = Field(default=None, ge=0)
    comment: Optional[str] = None
    end_location: Optional[Location] = None
