from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from errors import (
    ContextUnavailable,
    Forbidden,
    NotFound,
    NotFoundOrForbidden,
    ProviderError,
    ValidationError,
)
from llm_client import GENERIC_FAILURE, ChatCompletionProvider
from models import Category, Suggestion, Transaction, TransactionType, User
from periods import Period, add_months, month_window
from schemas import MAX_CENTS, CategoryIn, TransactionIn, UserIn

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
MAX_SERIES_MONTHS = 120

Provider = Callable[[str], str]


def require_user_id(user_id: Optional[int]) -> int:
    if user_id is None or user_id == "":
        raise ValidationError("User id is required")
    return user_id


def format_amount(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def _validation_message(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "input"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)


def _coerce(model: type[BaseModel], data: Any) -> Any:
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(_validation_message(exc)) from exc


def average_of_salaries(salaries_cents: Iterable[Optional[int]]) -> int:
    """Average of the strictly positive entries; blanks and zeros are gaps."""
    valid = [value for value in salaries_cents if value and value > 0]
    if not valid:
        return 0
    average = (Decimal(sum(valid)) / Decimal(len(valid))).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(average)


def seed_global_categories(session: Session, names: Iterable[str]) -> int:
    existing = set(
        session.scalars(select(Category.name).where(Category.user_id.is_(None))).all()
    )
    created = 0
    for name in names:
        clean_name = name.strip()
        if not clean_name or clean_name in existing:
            continue
        session.add(Category(user_id=None, name=clean_name))
        existing.add(clean_name)
        created += 1
    if created:
        session.commit()
        logger.info(f"global_categories_seeded: created={created}")
    return created


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: Union[UserIn, Mapping[str, Any]]) -> User:
        payload = _coerce(UserIn, data)
        user = User(
            name=payload.name,
            average_income_cents=payload.average_income_cents,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def update_average_income(
        self, user_id: int, average_income_cents: Optional[int]
    ) -> User:
        if average_income_cents is None or not (
            0 <= average_income_cents <= MAX_CENTS
        ):
            raise ValidationError("Average income must be a non-negative amount within range")
        user = self.get(user_id)
        user.average_income_cents = average_income_cents
        self.session.commit()
        self.session.refresh(user)
        return user


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = require_user_id(user_id)

    def _visible(self):
        return or_(Category.user_id.is_(None), Category.user_id == self.user_id)

    def list_visible(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(self._visible())
            .order_by(Category.user_id.is_not(None), Category.name, Category.id)
        )
        return list(self.session.scalars(stmt).all())

    def visible_names(self) -> dict[int, str]:
        return {category.id: category.name for category in self.list_visible()}

    def get_visible(self, category_id: int) -> Optional[Category]:
        category = self.session.get(Category, category_id)
        if not category:
            return None
        if category.user_id is not None and category.user_id != self.user_id:
            return None
        return category

    def create(self, data: Union[CategoryIn, str]) -> Category:
        name = data.name if isinstance(data, CategoryIn) else data
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("Category name is required")
        if len(clean_name) > 100:
            raise ValidationError("Category name must be at most 100 characters")
        category = Category(user_id=self.user_id, name=clean_name)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFound("Category not found")
        if category.user_id != self.user_id:
            raise Forbidden("You do not have permission to delete this category")
        # Transactions keep their category_id and report as Uncategorized.
        self.session.delete(category)
        self.session.commit()


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = require_user_id(user_id)

    def _require_visible_category(self, category_id: int) -> None:
        categories = CategoryService(self.session, self.user_id)
        if categories.get_visible(category_id) is None:
            raise ValidationError("Category not found")

    def create(self, fields: Union[TransactionIn, Mapping[str, Any]]) -> Transaction:
        data = _coerce(TransactionIn, fields)
        self._require_visible_category(data.category_id)
        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            type=data.type,
            amount_cents=data.amount_cents,
            description=data.description,
            category_id=data.category_id,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundOrForbidden(
                "Transaction not found or you do not have permission to access it"
            )
        return txn

    def update(
        self, transaction_id: int, fields: Union[TransactionIn, Mapping[str, Any]]
    ) -> Transaction:
        txn = self.get(transaction_id)
        data = _coerce(TransactionIn, fields)
        self._require_visible_category(data.category_id)

        txn.date = data.date
        txn.type = data.type
        txn.amount_cents = data.amount_cents
        txn.description = data.description
        txn.category_id = data.category_id
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()

    def list_all(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def list_between(self, start: date, end: date) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date >= start,
                Transaction.date < end,
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def recent(self, limit: int = 10) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())


@dataclass(frozen=True)
class PeriodSummary:
    income: int = 0
    expense: int = 0

    @property
    def balance(self) -> int:
        return self.income - self.expense

    def combine(self, other: "PeriodSummary") -> "PeriodSummary":
        return PeriodSummary(
            income=self.income + other.income,
            expense=self.expense + other.expense,
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "income": self.income,
            "expense": self.expense,
            "balance": self.balance,
        }


class MetricsService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = require_user_id(user_id)
        self.transactions = TransactionService(session, self.user_id)

    def _window(self, start: date, end: date) -> list[Transaction]:
        if start > end:
            raise ValidationError("Start date must be before end date")
        return self.transactions.list_between(start, end)

    def summarize(self, start: date, end: date) -> PeriodSummary:
        income = 0
        expense = 0
        for txn in self._window(start, end):
            if txn.type == TransactionType.income:
                income += txn.amount_cents
            elif txn.type == TransactionType.expense:
                expense += txn.amount_cents
        return PeriodSummary(income=income, expense=expense)

    def summarize_period(self, period: Period) -> PeriodSummary:
        return self.summarize(period.start, period.end)

    def category_breakdown(
        self,
        start: date,
        end: date,
        kind: Union[TransactionType, str] = TransactionType.expense,
    ) -> dict[str, int]:
        try:
            kind = TransactionType(kind)
        except ValueError as exc:
            raise ValidationError(
                'Transaction type must be either "income" or "expense"'
            ) from exc

        names = CategoryService(self.session, self.user_id).visible_names()
        totals: dict[str, int] = {}
        for txn in self._window(start, end):
            if txn.type != kind:
                continue
            label = names.get(txn.category_id, UNCATEGORIZED)
            totals[label] = totals.get(label, 0) + txn.amount_cents
        return totals

    def monthly_series(
        self, months_back: int = 6, *, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        if not 1 <= months_back <= MAX_SERIES_MONTHS:
            raise ValidationError(
                f"months_back must be between 1 and {MAX_SERIES_MONTHS}"
            )
        today = today or date.today()
        first = add_months(today, -(months_back - 1))
        series: list[dict[str, object]] = []
        for offset in range(months_back):
            window = month_window(add_months(first, offset))
            summary = self.summarize_period(window)
            series.append({"month": window.slug, **summary.as_dict()})
        return series


ANALYSIS_DIRECTIVE = """---
TASK: Provide a concise financial analysis.

OUTPUT REQUIREMENTS:
- PLAIN TEXT, no markdown.
- Keep it short; focus on the top 2-3 findings.

SECTIONS:
SPENDING OVERVIEW:
KEY SAVING OPPORTUNITY:
ACTION PLAN:
POTENTIAL SAVINGS:
"""

NO_TRANSACTIONS = "No transaction data available."


class InsightsService:
    """Builds a prompt from the user's ledger, asks the provider, stores the answer.

    A suggestion row is written only after the provider returns text. Missing
    context (unknown user, unreadable store) degrades the prompt instead of
    failing the request.
    """

    def __init__(
        self,
        session: Session,
        user_id: Optional[int],
        provider: Optional[Provider] = None,
    ) -> None:
        self.session = session
        self.user_id = require_user_id(user_id)
        self.settings = get_settings()
        self.provider: Provider = provider or ChatCompletionProvider(self.settings)
        self.metrics = MetricsService(session, self.user_id)

    def _read(self, part: str, loader: Callable[[], Any]) -> Any:
        try:
            return loader()
        except NotFound as exc:
            raise ContextUnavailable(f"{part}: {exc}") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise ContextUnavailable(f"{part}: store unavailable") from exc

    def _profile_lines(self) -> list[str]:
        user = self._read("profile", lambda: UserService(self.session).get(self.user_id))
        if user.average_income_cents is None:
            average = "Not set"
        else:
            average = format_amount(user.average_income_cents)
        return [f"User Name: {user.name or 'N/A'}", f"Average Income: {average}"]

    def _month_line(self, today: date) -> str:
        window = Period("month_to_date", today.replace(day=1), today + date.resolution)
        summary = self._read("summary", lambda: self.metrics.summarize_period(window))
        return (
            f"This Month So Far: income {format_amount(summary.income)}, "
            f"expenses {format_amount(summary.expense)}, "
            f"balance {format_amount(summary.balance)}"
        )

    def _transaction_lines(self) -> list[str]:
        limit = self.settings.insight_transaction_limit

        def load() -> tuple[list[Transaction], dict[int, str]]:
            txns = self.metrics.transactions.recent(limit)
            names = CategoryService(self.session, self.user_id).visible_names()
            return txns, names

        txns, names = self._read("transactions", load)
        if not txns:
            return [NO_TRANSACTIONS]
        lines = []
        for txn in txns:
            verb = "Spent" if txn.type == TransactionType.expense else "Received"
            line = f"- {txn.date.isoformat()}: {verb} {format_amount(txn.amount_cents)}"
            if txn.description:
                line += f" for {txn.description}"
            line += f" ({names.get(txn.category_id, UNCATEGORIZED)})."
            lines.append(line)
        return lines

    def _degraded(self, exc: ContextUnavailable) -> None:
        logger.warning(
            f"insight_context_degraded: user_id={self.user_id} reason={exc}"
        )

    def build_prompt(
        self, user_prompt: Optional[str] = None, *, today: Optional[date] = None
    ) -> str:
        today = today or date.today()
        try:
            profile = self._profile_lines()
        except ContextUnavailable as exc:
            self._degraded(exc)
            profile = ["User Name: N/A", "Average Income: Not set"]
        try:
            month = [self._month_line(today)]
        except ContextUnavailable as exc:
            self._degraded(exc)
            month = []
        try:
            transactions = self._transaction_lines()
        except ContextUnavailable as exc:
            self._degraded(exc)
            transactions = [NO_TRANSACTIONS]

        context = "\n".join(
            [
                "Here is the user's financial data:",
                *profile,
                *month,
                "",
                "Recent Transactions:",
                *transactions,
            ]
        )
        question = (user_prompt or "").strip()
        if question:
            return f'{context}\n\nAnswer the user\'s question concisely: "{question}"'
        return f"{context}\n\n{ANALYSIS_DIRECTIVE}"

    def _call_provider(self, prompt: str) -> str:
        try:
            response = self.provider(prompt)
        except ProviderError:
            raise
        except Exception as exc:
            logger.exception(f"llm_call_failed: user_id={self.user_id}")
            raise ProviderError(GENERIC_FAILURE) from exc
        if not isinstance(response, str) or not response.strip():
            logger.error(f"llm_call_failed: user_id={self.user_id} reason=empty")
            raise ProviderError(GENERIC_FAILURE)
        return response.strip()

    def generate(self, user_prompt: Optional[str] = None) -> Suggestion:
        prompt = self.build_prompt(user_prompt)
        # Close the read transaction so nothing is held during the provider call.
        self.session.commit()
        logger.info(
            f"suggestion_requested: user_id={self.user_id} "
            f"custom={bool((user_prompt or '').strip())}"
        )
        response = self._call_provider(prompt)

        suggestion = Suggestion(
            user_id=self.user_id,
            prompt=prompt,
            response=response,
            created_at=datetime.utcnow(),
        )
        self.session.add(suggestion)
        self.session.commit()
        self.session.refresh(suggestion)
        logger.info(f"suggestion_saved: user_id={self.user_id} id={suggestion.id}")
        return suggestion

    def history(self) -> list[Suggestion]:
        stmt = (
            select(Suggestion)
            .where(Suggestion.user_id == self.user_id)
            .order_by(Suggestion.created_at.desc(), Suggestion.id.desc())
        )
        return list(self.session.scalars(stmt).all())
