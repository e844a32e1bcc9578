from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import TransactionType

# Largest value a signed 64-bit INTEGER column can hold.
MAX_CENTS = 2**63 - 1


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    average_income_cents: Optional[int] = Field(default=None, ge=0, le=MAX_CENTS)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name must not be empty")
        return value


class AverageIncomeIn(BaseModel):
    average_income_cents: int = Field(..., ge=0, le=MAX_CENTS)


class SalariesIn(BaseModel):
    salaries_cents: list[int] = Field(default_factory=list)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: date
    type: TransactionType
    amount_cents: int = Field(..., ge=0, le=MAX_CENTS)
    category_id: int
    description: Optional[str] = Field(default=None, max_length=255)

    @field_validator("description")
    @classmethod
    def blank_description_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class SuggestionIn(BaseModel):
    prompt: Optional[str] = Field(default=None, max_length=2000)
