"""Per-account configuration passed into the booking components."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, model_validator

from chatbooking.models.calendar import CalendarSettings
from chatbooking.variables import BookingRequirements

REVIEW_FLOW_ID = "review"


class AccountSettings(BaseModel):
    """Business vertical, booking requirements, calendar link and review link.

    ``calendar_access_token`` is a bearer credential obtained and refreshed by
    the host; when neither it nor a service account is available the account
    books locally only.
    """

    account_id: str
    business_name: str = ""
    vertical: str = "gastro"
    requirements: BookingRequirements = BookingRequirements()
    calendar: CalendarSettings = CalendarSettings()
    calendar_id: Optional[str] = None
    calendar_access_token: Optional[str] = None
    review_url: Optional[str] = None
    review_flow_id: str = REVIEW_FLOW_ID

    @model_validator(mode="before")
    @classmethod
    def _vertical_requirements(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("requirements") is None:
            data = dict(data)
            data["requirements"] = BookingRequirements.for_vertical(data.get("vertical", "gastro"))
        return data

    @property
    def calendar_connected(self) -> bool:
        return bool(self.calendar_id)
