from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from uuid import uuid4

import bcrypt
import structlog
from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Query, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from spendsync.config import Settings, get_settings
from spendsync.currency_conversion import (
    CompositeRateProvider,
    ConversionResult,
    OpenExchangeRateProvider,
    RateProvider,
    RateProviderUnavailable,
    StaticRateProvider,
    convert_minor_units,
    format_amount,
)
from spendsync.db import create_db_engine, expenses, init_db, invoices, recurring_expenses, settings, users
from spendsync.invoice_extraction import ExtractedInvoice, InvoiceExtractionError, InvoiceExtractor
from spendsync.logging_setup import configure_logging, is_configured
from spendsync.recurring import due_occurrences, first_of_next_month
from spendsync.schemas import (
    CredentialsPayload,
    DailySpendingEntry,
    ExpensePayload,
    ExpenseResponse,
    ExpenseUpdatePayload,
    InvoiceProcessResponse,
    InvoiceResponse,
    RecurringPayload,
    RecurringProcessResponse,
    RecurringResponse,
    SettingsPayload,
    SettingsResponse,
    StatsResponse,
    UserResponse,
)
from spendsync.stats import LedgerEntry, daily_spending, summarize

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api")


@dataclass
class AppContext:
    settings: Settings
    engine: Engine
    rate_provider: RateProvider
    invoice_extractor: InvoiceExtractor | None


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(request: Request, ctx: AppContext = Depends(get_context)) -> int:
    user_id = request.session.get("user_id")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    with ctx.engine.begin() as conn:
        exists = conn.execute(select(users.c.id).where(users.c.id == user_id)).first()
    if not exists:
        request.session.clear()
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user_id


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def get_or_create_settings(conn: Connection, user_id: int, default_currency: str) -> dict:
    row = conn.execute(select(settings).where(settings.c.user_id == user_id)).mappings().first()
    if row:
        return dict(row)
    conn.execute(insert(settings).values(user_id=user_id, base_currency=default_currency))
    return dict(conn.execute(select(settings).where(settings.c.user_id == user_id)).mappings().one())


def resolve_base_currency(conn: Connection, ctx: AppContext, user_id: int) -> str:
    return get_or_create_settings(conn, user_id, ctx.settings.default_currency)["base_currency"]


def convert_for_base(ctx: AppContext, amount: int, currency: str, base_currency: str) -> ConversionResult:
    try:
        return convert_minor_units(amount, currency, base_currency, rate_provider=ctx.rate_provider)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RateProviderUnavailable as exc:
        logger.error("exchange_rate_unavailable", source=currency, target=base_currency)
        raise HTTPException(status_code=502, detail="Failed to fetch exchange rate") from exc


def convert_amount_safe(ctx: AppContext, amount: int, currency: str, base_currency: str) -> int:
    try:
        return convert_minor_units(amount, currency, base_currency, rate_provider=ctx.rate_provider).converted_amount
    except (ValueError, RateProviderUnavailable) as exc:
        logger.warning("stats_conversion_skipped", source=currency, target=base_currency, reason=str(exc))
        return amount


def insert_expense(
    conn: Connection,
    ctx: AppContext,
    user_id: int,
    base_currency: str,
    *,
    amount: int,
    currency: str,
    description: str,
    date: datetime,
    category: str,
    type: str,
    is_recurring: bool = False,
    recurring_id: int | None = None,
    conversion: ConversionResult | None = None,
) -> dict:
    conversion = conversion or convert_for_base(ctx, amount, currency, base_currency)
    row = conn.execute(
        insert(expenses)
        .values(
            user_id=user_id,
            amount=conversion.converted_amount,
            original_amount=amount,
            currency=currency,
            base_currency=base_currency,
            exchange_rate=conversion.rate,
            description=description,
            date=to_naive_utc(date),
            category=category,
            type=type,
            is_recurring=is_recurring,
            recurring_id=recurring_id,
        )
        .returning(*expenses.c)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create expense.")
    return dict(row)


def ensure_recurring_owned(conn: Connection, user_id: int, recurring_id: int) -> None:
    owned = conn.execute(
        select(recurring_expenses.c.id).where(
            recurring_expenses.c.id == recurring_id,
            recurring_expenses.c.user_id == user_id,
        )
    ).first()
    if not owned:
        raise HTTPException(status_code=404, detail="Recurring expense not found.")


def seed_demo_data(conn: Connection, ctx: AppContext, user_id: int) -> None:
    today = datetime.now()
    base_currency = resolve_base_currency(conn, ctx, user_id)
    insert_expense(
        conn, ctx, user_id, base_currency,
        amount=5000, currency=base_currency, description="Groceries",
        date=today, category="Food", type="expense",
    )
    insert_expense(
        conn, ctx, user_id, base_currency,
        amount=120000, currency=base_currency, description="Salary",
        date=today, category="Salary", type="income",
    )
    conn.execute(
        insert(recurring_expenses).values(
            user_id=user_id,
            amount=1500,
            currency=base_currency,
            description="Netflix",
            category="Entertainment",
            frequency="monthly",
            next_due_date=first_of_next_month(today.date()),
            active=True,
        )
    )


# --- Auth ---


@router.post("/register", response_model=UserResponse, status_code=201)
def register(payload: CredentialsPayload, request: Request, ctx: AppContext = Depends(get_context)) -> UserResponse:
    username = payload.username.strip().lower()
    if not username or not payload.password:
        raise HTTPException(status_code=400, detail="Username and password required.")
    hashed_password = hash_password(payload.password)

    try:
        with ctx.engine.begin() as conn:
            row = conn.execute(
                insert(users)
                .values(username=username, hashed_password=hashed_password)
                .returning(users.c.id, users.c.username, users.c.created_at)
            ).mappings().first()
            if row:
                get_or_create_settings(conn, row["id"], ctx.settings.default_currency)
                if ctx.settings.seed_demo_data:
                    seed_demo_data(conn, ctx, row["id"])
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Username already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    request.session["user_id"] = row["id"]
    logger.info("user_registered", user_id=row["id"])
    return UserResponse(id=row["id"], username=row["username"], created_at=row["created_at"])


@router.post("/login", response_model=UserResponse)
def login(payload: CredentialsPayload, request: Request, ctx: AppContext = Depends(get_context)) -> UserResponse:
    username = payload.username.strip().lower()
    with ctx.engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.username == username)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    request.session["user_id"] = row["id"]
    return UserResponse(id=row["id"], username=row["username"], created_at=row["created_at"])


@router.post("/logout")
def logout(request: Request) -> dict:
    request.session.clear()
    return {"status": "logged out"}


@router.get("/user", response_model=UserResponse)
def current_user(user_id: int = Depends(get_user_id), ctx: AppContext = Depends(get_context)) -> UserResponse:
    with ctx.engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().one()
    return UserResponse(id=row["id"], username=row["username"], created_at=row["created_at"])


# --- Settings ---


@router.get("/settings", response_model=SettingsResponse)
def get_user_settings(user_id: int = Depends(get_user_id), ctx: AppContext = Depends(get_context)) -> SettingsResponse:
    with ctx.engine.begin() as conn:
        row = get_or_create_settings(conn, user_id, ctx.settings.default_currency)
    return SettingsResponse.model_validate(row)


@router.patch("/settings", response_model=SettingsResponse)
def update_user_settings(
    payload: SettingsPayload,
    user_id: int = Depends(get_user_id),
    ctx: AppContext = Depends(get_context),
) -> SettingsResponse:
    with ctx.engine.begin() as conn:
        get_or_create_settings(conn, user_id, ctx.settings.default_currency)
        row = conn.execute(
            update(settings)
            .where(settings.c.user_id == user_id)
            .values(base_currency=payload.base_currency, updated_at=func.now())
            .returning(*settings.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Settings not found.")
    return SettingsResponse.model_validate(dict(row))


# --- Expenses ---


@router.get("/expenses", response_model=list[ExpenseResponse])
def list_expenses(
    start_date: date | None = Query(None, alias="startDate"),
    end_date: date | None = Query(None, alias="endDate"),
    category: str | None = None,
    user_id: int = Depends(get_user_id),
    ctx: AppContext = Depends(get_context),
) -> list[ExpenseResponse]:
    conditions = [expenses.c.user_id == user_id]
    if start_date:
        conditions.append(expenses.c.date >= datetime.combine(start_date, time.min))
    if end_date:
        conditions.append(expenses.c.date < datetime.combine(end_date + timedelta(days=1), time.min))
    if category:
        conditions.append(expenses.c.category == category)
    with ctx.engine.begin() as conn:
        rows = conn.execute(
            select(expenses).where(and_(*conditions)).order_by(expenses.c.date.desc(), expenses.c.id.desc())
        ).mappings().all()
    return [ExpenseResponse.model_validate(dict(row)) for row in rows]


@router.post("/expenses", response_model=ExpenseResponse, status_code=201)
def create_expense(
    payload: ExpensePayload,
    user_id: int = Depends(get_user_id),
    ctx: AppContext = Depends(get_context),
) -> ExpenseResponse:
    with ctx.engine.begin() as conn:
        if payload.recurring_id is not None:
            ensure_recurring_owned(conn, user_id, payload.recurring_id)
        base_currency = resolve_base_currency(conn, ctx, user_id)
        row = insert_expense(
            conn, ctx, user_id, base_currency,
            amount=payload.amount,
            currency=payload.currency,
            description=payload.description,
            date=payload.date,
            category=payload.category,
            type=payload.type,
            is_recurring=payload.is_recurring,
            recurring_id=payload.recurring_id,
        )
    logger.info(
        "expense_created",
        user_id=user_id,
        expense_id=row["id"],
        amount=format_amount(row["amount"], row["base_currency"]),
        original=format_amount(row["original_amount"], row["currency"]),
    )
    return ExpenseResponse.model_validate(row)


@router.put("/expenses/{expense_id}", response_model=ExpenseResponse)
def update_expense(
    expense_id: int,
    payload: ExpenseUpdatePayload,
    user_id: int = Depends(get_user_id),
    ctx: AppContext = Depends(get_context),
) -> ExpenseResponse:
    updates = payload.model_dump(exclude_unset=True)
    with ctx.engine.begin() as conn:
        existing = conn.execute(
            select(expenses).where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
        ).mappings().first()
        if not existing:
            raise HTTPException(status_code=404, detail="Expense not found")

        if updates.get("recurring_id") is not None:
            ensure_recurring_owned(conn, user_id, updates["recurring_id"])
        if updates.get("date") is not None:
            updates["date"] = to_naive_utc(updates["date"])
        if "amount" in updates or "currency" in updates:
            currency = updates.get("currency") or existing["currency"] or ctx.settings.default_currency
            amount = updates.get("amount")
            if amount is None:
                amount = existing["original_amount"] or existing["amount"]
            base_currency = resolve_base_currency(conn, ctx, user_id)
            conversion = convert_for_base(ctx, amount, currency, base_currency)
            updates.update(
                amount=conversion.converted_amount,
                original_amount=amount,
                currency=currency,
                base_currency=base_currency,
                exchange_rate=conversion.rate,
            )
        updates = {key: value for key, value in updates.items() if value is not None or key == "recurring_id"}
        if not updates:
            return ExpenseResponse.model_validate(dict(existing))

        row = conn.execute(
            update(expenses)
            .where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
            .values(**updates)
            .returning(*expenses.c)
        ).mappings().first()
    return ExpenseResponse.model_validate(dict(row))


@router.delete("/expenses/{expense_id}", status_code=204)
def delete_expense(
    expense_id: int,
    user_id: int = Depends(get_user_id),
    ctx: AppContext = Depends(get_context),
) -> Response:
    stmt = expenses.delete().where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
    with ctx.engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Expense not found")
    return Response(status_code=204)


def _ledger_entries(conn: Connection, user_id: int) -> list[LedgerEntry]:
    rows = conn.execute(
        select(expenses.c.amount, expenses.c.type, expenses.c.date, expenses.c.base_currency).where(
            expenses.c.user_id == user_id
        )
    ).mappings().all()
    return [
        LedgerEntry(amount=row["amount"], type=row["type"], date=row["date"], base_currency=row["base_currency"])
        for row in rows
    ]


@router.get("/stats", response_model=StatsResponse)
def get_stats(user_id: int = Depends(get_user_id), ctx: AppContext = Depends(get_context)) -> StatsResponse:
    with ctx.engine.begin() as conn:
        base_currency = resolve_base_currency(conn, ctx, user_id)
        entries = _ledger_entries(conn, user_id)
    stats = summarize(
        entries,
        base_currency,
        date.today(),
        lambda amount, currency: convert_amount_safe(ctx, amount, currency, base_currency),
    )
    return StatsResponse(
        total_income=stats.total_income,
        total_expense=stats.total_expense,
        balance=stats.balance,
        monthly_income=stats.monthly_income,
        currency=stats.currency,
    )


@router.get("/stats/daily", response_model=list[DailySpendingEntry])
def get_daily_spending(
    user_id: int = Depends(get_user_id), ctx: AppContext = Depends(get_context)
) -> list[DailySpendingEntry]:
    with ctx.engine.begin() as conn:
        base_currency = resolve_base_currency(conn, ctx, user_id)
        entries = _ledger_entries(conn, user_id)
    series = daily_spending(
        entries,
        base_currency,
        date.today(),
        lambda amount, currency: convert_amount_safe(ctx, amount, currency, base_currency),
    )
    return [DailySpendingEntry(date=day, amount=amount) for day, amount in series]


# --- Recurring ---


@router.get("/recurring", response_model=list[RecurringResponse])
def list_recurring(user_id: int = Depends(get_user_id), ctx: AppContext = Depends(get_context)) -> list[RecurringResponse]:
    with ctx.engine.begin() as conn:
        rows = conn.execute(
            select(recurring_expenses)
            .where(recurring_expenses.c.user_id == user_id, recurring_expenses.c.active.is_(True))
            .order_by(recurring_expenses.c.next_due_date.asc(), recurring_expenses.c.id.asc())
        ).mappings().all()
    return [RecurringResponse.model_validate(dict(row)) for row in rows]


@router.post("/recurring", response_model=RecurringResponse, status_code=201)
def create_recurring(
    payload: RecurringPayload,
    user_id: int = Depends(get_user_id),
    ctx: AppContext = Depends(get_context),
) -> RecurringResponse:
    with ctx.engine.begin() as conn:
        row = conn.execute(
            insert(recurring_expenses)
            .values(
                user_id=user_id,
                amount=payload.amount,
                currency=payload.currency,
                description=payload.description.strip(),
                category=payload.category.strip(),
                frequency=payload.frequency,
                next_due_date=to_naive_utc(payload.next_due_date),
                active=payload.active,
            )
            .returning(*recurring_expenses.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create recurring expense.")
    return RecurringResponse.model_validate(dict(row))


@router.delete("/recurring/{recurring_id}", status_code=204)
def delete_recurring(
    recurring_id: int,
    user_id: int = Depends(get_user_id),
    ctx: AppContext = Depends(get_context),
) -> Response:
    with ctx.engine.begin() as conn:
        result = conn.execute(
            update(recurring_expenses)
            .where(
                recurring_expenses.c.id == recurring_id,
                recurring_expenses.c.user_id == user_id,
                recurring_expenses.c.active.is_(True),
            )
            .values(active=False)
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Recurring expense not found")
    return Response(status_code=204)


@router.post("/recurring/process", response_model=RecurringProcessResponse)
def process_due_recurring(
    user_id: int = Depends(get_user_id), ctx: AppContext = Depends(get_context)
) -> RecurringProcessResponse:
    today = date.today()
    created = 0
    with ctx.engine.begin() as conn:
        base_currency = resolve_base_currency(conn, ctx, user_id)
        schedules = conn.execute(
            select(recurring_expenses).where(
                recurring_expenses.c.user_id == user_id,
                recurring_expenses.c.active.is_(True),
                recurring_expenses.c.next_due_date < datetime.combine(today + timedelta(days=1), time.min),
            )
        ).mappings().all()
        for schedule in schedules:
            due = due_occurrences(schedule["next_due_date"], schedule["frequency"], today)
            if not due.occurrences:
                continue
            conversion = convert_for_base(ctx, schedule["amount"], schedule["currency"], base_currency)
            for occurrence in due.occurrences:
                insert_expense(
                    conn, ctx, user_id, base_currency,
                    amount=schedule["amount"],
                    currency=schedule["currency"],
                    description=schedule["description"],
                    date=occurrence,
                    category=schedule["category"],
                    type="expense",
                    is_recurring=True,
                    recurring_id=schedule["id"],
                    conversion=conversion,
                )
                created += 1
            conn.execute(
                update(recurring_expenses)
                .where(recurring_expenses.c.id == schedule["id"])
                .values(next_due_date=due.next_due_date)
            )
    logger.info("recurring_processed", user_id=user_id, created=created)
    return RecurringProcessResponse(created=created)


# --- Invoices ---


@router.post("/invoices/upload", response_model=InvoiceResponse, status_code=201)
def upload_invoice(
    file: UploadFile | None = File(None),
    user_id: int = Depends(get_user_id),
    ctx: AppContext = Depends(get_context),
) -> InvoiceResponse:
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")
    limit = ctx.settings.max_upload_bytes
    contents = file.file.read(limit + 1)
    if not contents:
        raise HTTPException(status_code=400, detail="No file uploaded")
    if len(contents) > limit:
        raise HTTPException(status_code=413, detail="File too large")

    upload_dir = Path(ctx.settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    destination = upload_dir / f"{uuid4().hex}{Path(file.filename).suffix.lower()}"
    destination.write_bytes(contents)

    with ctx.engine.begin() as conn:
        row = conn.execute(
            insert(invoices)
            .values(user_id=user_id, file_url=str(destination), status="pending")
            .returning(*invoices.c)
        ).mappings().first()
    logger.info("invoice_uploaded", user_id=user_id, invoice_id=row["id"], size=len(contents))
    return InvoiceResponse.model_validate(dict(row))


@router.get("/invoices", response_model=list[InvoiceResponse])
def list_invoices(user_id: int = Depends(get_user_id), ctx: AppContext = Depends(get_context)) -> list[InvoiceResponse]:
    with ctx.engine.begin() as conn:
        rows = conn.execute(
            select(invoices)
            .where(invoices.c.user_id == user_id)
            .order_by(invoices.c.created_at.desc(), invoices.c.id.desc())
        ).mappings().all()
    return [InvoiceResponse.model_validate(dict(row)) for row in rows]


@router.post("/invoices/{invoice_id}/process", response_model=InvoiceProcessResponse)
def process_invoice(
    invoice_id: int,
    user_id: int = Depends(get_user_id),
    ctx: AppContext = Depends(get_context),
) -> InvoiceProcessResponse:
    with ctx.engine.begin() as conn:
        invoice = conn.execute(
            select(invoices).where(invoices.c.id == invoice_id, invoices.c.user_id == user_id)
        ).mappings().first()
    if not invoice:
        raise HTTPException(status_code=404, detail="Invoice not found")
    if ctx.invoice_extractor is None:
        raise HTTPException(status_code=500, detail="No AI API Key configured")

    try:
        result = ctx.invoice_extractor.extract_file(invoice["file_url"])
        extracted = ExtractedInvoice.model_validate(result)
    except (InvoiceExtractionError, ValidationError) as exc:
        raise _mark_invoice_failed(ctx, invoice_id, exc) from exc

    try:
        with ctx.engine.begin() as conn:
            conn.execute(
                update(invoices)
                .where(invoices.c.id == invoice_id)
                .values(status="processed", processed_data=result)
            )
            if extracted.is_complete:
                base_currency = resolve_base_currency(conn, ctx, user_id)
                insert_expense(
                    conn, ctx, user_id, base_currency,
                    amount=extracted.amount,
                    currency=base_currency,
                    description=extracted.description,
                    date=_parse_invoice_date(extracted.date),
                    category=extracted.category,
                    type=extracted.type,
                )
    except SQLAlchemyError as exc:
        raise _mark_invoice_failed(ctx, invoice_id, exc) from exc
    return InvoiceProcessResponse(success=True, data=result)


def _mark_invoice_failed(ctx: AppContext, invoice_id: int, exc: Exception) -> HTTPException:
    logger.error("invoice_processing_failed", invoice_id=invoice_id, reason=str(exc))
    with ctx.engine.begin() as conn:
        conn.execute(update(invoices).where(invoices.c.id == invoice_id).values(status="failed"))
    return HTTPException(status_code=500, detail="Failed to process invoice")


def _parse_invoice_date(value: str | None) -> datetime:
    if value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("invoice_date_unparsed", value=value)
    return datetime.now()


# --- Errors ---


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    message = str(first.get("msg", "Invalid request"))
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    body = {"message": message}
    if field:
        body["field"] = field
    return JSONResponse(status_code=400, content=body)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, status=exc.status_code, message=exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=exc.headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal Server Error"})


def create_app(
    app_settings: Settings | None = None,
    rate_provider: RateProvider | None = None,
    invoice_extractor: InvoiceExtractor | None = None,
) -> FastAPI:
    app_settings = app_settings or get_settings()
    if not is_configured():
        configure_logging(app_settings.log_level, app_settings.log_json)

    if rate_provider is None:
        rate_provider = CompositeRateProvider(
            primary=OpenExchangeRateProvider(
                base_url=app_settings.exchange_rate_url,
                cache_ttl_seconds=app_settings.exchange_rate_ttl_seconds,
            ),
            fallback=StaticRateProvider(),
        )
    if invoice_extractor is None and app_settings.ai_api_key:
        invoice_extractor = InvoiceExtractor(
            api_key=app_settings.ai_api_key,
            base_url=app_settings.ai_base_url,
            model=app_settings.ai_model,
            timeout=app_settings.ai_timeout_seconds,
        )

    app = FastAPI(title="SpendSync")
    app.state.context = AppContext(
        settings=app_settings,
        engine=create_db_engine(app_settings.database_url),
        rate_provider=rate_provider,
        invoice_extractor=invoice_extractor,
    )
    app.add_middleware(SessionMiddleware, secret_key=app_settings.secret_key, same_site="lax")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[app_settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)

    @app.on_event("startup")
    def startup() -> None:
        init_db(app.state.context.engine)
        Path(app_settings.upload_dir).mkdir(parents=True, exist_ok=True)
        logger.info("app_started", database_url=app_settings.database_url.split("@")[-1])

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    return app


def run() -> None:
    import uvicorn

    uvicorn.run(create_app, factory=True, host="0.0.0.0", port=8000)
