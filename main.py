import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import export_transactions
from database import SessionLocal, init_db, session_scope
from errors import (
    Forbidden,
    NotFound,
    NotFoundOrForbidden,
    ProviderError,
    ValidationError,
)
from llm_client import GENERIC_FAILURE
from models import Category, Suggestion, Transaction, TransactionType, User
from periods import Period, resolve_period
from schemas import (
    AverageIncomeIn,
    CategoryIn,
    SalariesIn,
    SuggestionIn,
    TransactionIn,
    UserIn,
)
from services import (
    CategoryService,
    InsightsService,
    MetricsService,
    Provider,
    TransactionService,
    UserService,
    average_of_salaries,
    seed_global_categories,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)

app = FastAPI(title="Budget Management")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_provider() -> Optional[Provider]:
    # None selects the configured chat-completion provider.
    return None


def current_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    if x_user_id is None:
        raise HTTPException(status_code=400, detail="X-User-Id header is required")
    return x_user_id


@app.on_event("startup")
def startup_event():
    init_db()
    with session_scope() as session:
        seed_global_categories(session, settings.global_categories)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400, content={"detail": jsonable_encoder(exc.errors())}
    )


def period_from_request(request: Request, default: str = "this_month") -> Period:
    params = request.query_params
    try:
        return resolve_period(
            params.get("period") or default,
            params.get("start"),
            params.get("end"),
            month=params.get("month"),
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def user_out(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "name": user.name,
        "average_income_cents": user.average_income_cents,
    }


def category_out(category: Category) -> dict[str, object]:
    return {"id": category.id, "name": category.name, "user_id": category.user_id}


def transaction_out(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "user_id": txn.user_id,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "description": txn.description,
        "category_id": txn.category_id,
    }


def suggestion_out(suggestion: Suggestion) -> dict[str, object]:
    return {
        "id": suggestion.id,
        "user_id": suggestion.user_id,
        "prompt": suggestion.prompt,
        "response": suggestion.response,
        "created_at": suggestion.created_at.isoformat(),
    }


def period_out(period: Period) -> dict[str, str]:
    return {
        "slug": period.slug,
        "start": period.start.isoformat(),
        "end": period.end.isoformat(),
    }


@app.post("/api/users", status_code=201)
def register_user(payload: UserIn, db: Session = Depends(get_db)):
    return user_out(UserService(db).create(payload))


@app.get("/api/users/me")
def get_me(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    try:
        user = UserService(db).get(user_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return user_out(user)


@app.put("/api/users/me/income")
def update_income(
    payload: AverageIncomeIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        user = UserService(db).update_average_income(
            user_id, payload.average_income_cents
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return user_out(user)


@app.post("/api/users/me/income/salaries")
def update_income_from_salaries(
    payload: SalariesIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    average = average_of_salaries(payload.salaries_cents)
    try:
        user = UserService(db).update_average_income(user_id, average)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return user_out(user)


@app.get("/api/categories")
def list_categories(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return [category_out(c) for c in CategoryService(db, user_id).list_visible()]


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user_id).create(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return category_out(category)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        CategoryService(db, user_id).delete(category_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Forbidden as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/transactions")
def list_transactions(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return [transaction_out(t) for t in TransactionService(db, user_id).list_all()]


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).create(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return transaction_out(txn)


@app.get("/api/transactions/summary")
def transaction_summary(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    period = period_from_request(request, default="month_to_date")
    summary = MetricsService(db, user_id).summarize_period(period)
    return {"period": period_out(period), **summary.as_dict()}


@app.get("/api/transactions/export.csv")
def export_transactions_endpoint(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    txns = TransactionService(db, user_id).list_between(period.start, period.end)
    names = CategoryService(db, user_id).visible_names()
    csv_content = export_transactions(txns, names)
    filename = f"transactions-{period.start.isoformat()}.csv"
    return Response(
        content=csv_content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).update(transaction_id, payload)
    except NotFoundOrForbidden as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return transaction_out(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except NotFoundOrForbidden as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/reports/category-breakdown")
def category_breakdown(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    kind = request.query_params.get("type", "expense")
    try:
        totals = MetricsService(db, user_id).category_breakdown(
            period.start, period.end, kind
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    items = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return {
        "period": period_out(period),
        "type": TransactionType(kind).value,
        "total": sum(totals.values()),
        "items": [{"category": label, "amount_cents": v} for label, v in items],
    }


@app.get("/api/reports/monthly-series")
def monthly_series(
    months: int = 6,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return MetricsService(db, user_id).monthly_series(months)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/suggestions")
def list_suggestions(
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    provider: Optional[Provider] = Depends(get_provider),
):
    service = InsightsService(db, user_id, provider=provider)
    return [suggestion_out(s) for s in service.history()]


@app.post("/api/suggestions/generate", status_code=201)
def generate_suggestion(
    payload: SuggestionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    provider: Optional[Provider] = Depends(get_provider),
):
    service = InsightsService(db, user_id, provider=provider)
    try:
        suggestion = service.generate(payload.prompt)
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=GENERIC_FAILURE) from exc
    return suggestion_out(suggestion)
