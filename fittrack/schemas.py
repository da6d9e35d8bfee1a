from datetime import date, datetime, timezone
from typing import List, Literal, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from .models import ACTIVITY_TYPES

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
CODE_PATTERN = r"^\d{6}$"
MAX_PAGE_SIZE = 50

SortOption = Literal[
    "date_desc",
    "date_asc",
    "calories_desc",
    "calories_asc",
    "duration_desc",
    "duration_asc",
]


class ValidationResult(BaseModel):
    loc: str
    msg: str


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class FormModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True, extra="ignore")


class RegisterForm(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    username: str = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    password: str
    confirm_password: str = ""

    @field_validator("username", "email", "first_name", "last_name", mode="before")
    @classmethod
    def strip(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class LoginForm(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1)

    @field_validator("username", mode="before")
    @classmethod
    def strip(cls, value):
        return value.strip() if isinstance(value, str) else value


class TokenRequest(LoginForm):
    pass


class ActivityBase(FormModel):
    distance_km: Optional[float] = Field(
        default=None,
        ge=0,
        le=1000,
        validation_alias=AliasChoices("distance_km", "distance"),
    )
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("distance_km", "notes", mode="before")
    @classmethod
    def blank_is_none(cls, value):
        return _blank_to_none(value)

    @field_validator("activity_type", check_fields=False)
    @classmethod
    def known_activity_type(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in ACTIVITY_TYPES:
            raise ValueError(f"Activity type must be one of: {', '.join(ACTIVITY_TYPES)}")
        return value

    @field_validator("activity_time", check_fields=False)
    @classmethod
    def naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return value
        return _to_naive_utc(value)


class ActivityCreate(ActivityBase):
    activity_type: str
    duration_minutes: int = Field(
        ge=1,
        le=1440,
        validation_alias=AliasChoices("duration_minutes", "duration"),
    )
    calories_burned: int = Field(
        ge=0,
        le=20000,
        validation_alias=AliasChoices("calories_burned", "calories"),
    )
    activity_time: datetime
    is_public: bool = False


class ActivityUpdate(ActivityBase):
    activity_type: Optional[str] = None
    duration_minutes: Optional[int] = Field(
        default=None,
        ge=1,
        le=1440,
        validation_alias=AliasChoices("duration_minutes", "duration"),
    )
    calories_burned: Optional[int] = Field(
        default=None,
        ge=0,
        le=20000,
        validation_alias=AliasChoices("calories_burned", "calories"),
    )
    activity_time: Optional[datetime] = None
    is_public: Optional[bool] = None

    def changes(self) -> dict:
        data = self.model_dump(exclude_unset=True)
        for required in ("activity_type", "duration_minutes", "calories_burned", "activity_time", "is_public"):
            if data.get(required, 0) is None:
                data.pop(required)
        return data


class ActivityFilters(FormModel):
    activity_type: Optional[str] = None
    date_from: Optional[date] = Field(default=None, validation_alias=AliasChoices("date_from", "dateFrom"))
    date_to: Optional[date] = Field(default=None, validation_alias=AliasChoices("date_to", "dateTo"))
    duration_min: Optional[int] = Field(default=None, ge=0, validation_alias=AliasChoices("duration_min", "durationMin"))
    duration_max: Optional[int] = Field(default=None, ge=0, validation_alias=AliasChoices("duration_max", "durationMax"))
    calories_min: Optional[int] = Field(default=None, ge=0, validation_alias=AliasChoices("calories_min", "caloriesMin"))
    calories_max: Optional[int] = Field(default=None, ge=0, validation_alias=AliasChoices("calories_max", "caloriesMax"))
    sort: SortOption = "date_desc"
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=10, ge=1, validation_alias=AliasChoices("pageSize", "page_size"))

    @field_validator("*", mode="before")
    @classmethod
    def blank_is_none(cls, value, info):
        value = _blank_to_none(value)
        if value is None and info.field_name in ("sort", "page", "page_size"):
            return cls.model_fields[info.field_name].default
        return value

    @field_validator("activity_type")
    @classmethod
    def all_means_any(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value.lower() == "all":
            return None
        return value

    @field_validator("page_size")
    @classmethod
    def clamp_page_size(cls, value: int) -> int:
        return min(value, MAX_PAGE_SIZE)

    def query_params(self) -> dict:
        """Filter values as query-string parameters, for pagination links."""
        params = {
            "activity_type": self.activity_type,
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
            "duration_min": self.duration_min,
            "duration_max": self.duration_max,
            "calories_min": self.calories_min,
            "calories_max": self.calories_max,
            "sort": self.sort,
            "pageSize": self.page_size,
        }
        return {key: value for key, value in params.items() if value is not None}


class ProfileUpdate(FormModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)


class PasswordChangeForm(BaseModel):
    current_password: str = Field(min_length=1)
    new_password: str
    confirm_password: str = ""


class EmailChangeRequest(FormModel):
    new_email: str = Field(max_length=255, pattern=EMAIL_PATTERN)

    @field_validator("new_email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class CodeSubmission(FormModel):
    code: str = Field(pattern=CODE_PATTERN)


class ForgotPasswordRequest(FormModel):
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class PasswordResetVerify(ForgotPasswordRequest):
    code: str = Field(pattern=CODE_PATTERN)


class PasswordResetForm(BaseModel):
    new_password: str
    confirm_password: str = ""


class AccountDeletionRequest(BaseModel):
    password: str = Field(min_length=1)


class AuditLogFilters(FormModel):
    username: Optional[str] = None
    event_type: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    page: int = Field(default=1, ge=1)

    @field_validator("*", mode="before")
    @classmethod
    def blank_is_none(cls, value, info):
        value = _blank_to_none(value)
        if value is None and info.field_name == "page":
            return 1
        return value


class PurgeForm(FormModel):
    days: int = Field(default=90, ge=1, le=3650)


def format_errors(exc: ValidationError) -> List[ValidationResult]:
    return [
        ValidationResult(loc=".".join(str(p) for p in error["loc"]), msg=error["msg"])
        for error in exc.errors()
    ]


def error_messages(exc: ValidationError) -> List[str]:
    messages = []
    for result in format_errors(exc):
        field = result.loc.replace("_", " ").capitalize() if result.loc else "Input"
        msg = result.msg
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        messages.append(f"{field}: {msg}")
    return messages
