from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
import secrets

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
    func,
    insert,
    select,
    update,
)

from backend.billing_cycle import CYCLE_MONTHS, normalize_cycle
from backend.config import load_settings
from backend.cost_normalizer import (
    DEFAULT_PERIOD,
    NormalizedCost,
    SortOrder,
    Subscription,
    normalize,
    parse_period,
    sort_costs,
)
from backend.exchange_rates import (
    BASE_CURRENCY,
    SUPPORTED_CURRENCIES,
    ExchangeRateHostSource,
    RateCache,
    RateSnapshot,
)
from backend.log import configure_logging, get_logger

settings = load_settings()
configure_logging(settings.log_level, settings.log_format)
logger = get_logger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(settings.database_url, connect_args=connect_args)
metadata = MetaData()

RATE_CACHE = RateCache(
    source=ExchangeRateHostSource(
        base_url=settings.rates_base_url,
        timeout=settings.rates_http_timeout,
    ),
    cache_path=settings.rates_cache_path,
    ttl=settings.rates_cache_ttl,
)

JWT_ALGORITHM = "HS256"
CENT = Decimal("0.01")

subscriptions = Table(
    "subscriptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("price", Numeric(14, 4), nullable=False),
    Column("currency", String(3), nullable=False, server_default=BASE_CURRENCY),
    Column("billing_date", Date, nullable=False),
    Column("cycle", String(20), nullable=False, server_default="monthly"),
    Column("note", String(500)),
    Column("is_advance", Boolean, nullable=False, server_default="0"),
    Column("self_ratio", Integer, nullable=False, server_default="1"),
    Column("advance_ratio", Integer, nullable=False, server_default="1"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class LoginPayload(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    token: str


def _validate_currency(value: str) -> str:
    normalized = value.strip().upper()
    if normalized not in SUPPORTED_CURRENCIES:
        raise ValueError(f"Currency must be one of {', '.join(SUPPORTED_CURRENCIES)}.")
    return normalized


def _validate_cycle(value: str) -> str:
    normalized = normalize_cycle(value)
    if normalized not in CYCLE_MONTHS:
        raise ValueError("Only monthly, halfyear, or yearly cycles are supported.")
    return normalized


def _validate_ratio(value: int, label: str) -> int:
    if value < 1:
        raise ValueError(f"{label} must be a positive integer.")
    return value


class SubscriptionPayload(BaseModel):
    name: str
    price: Decimal
    currency: str = BASE_CURRENCY
    billing_date: date
    cycle: str = "monthly"
    note: str | None = None
    is_advance: bool = False
    self_ratio: int = 1
    advance_ratio: int = 1

    @classmethod
    def validate_payload(cls, payload: "SubscriptionPayload") -> "SubscriptionPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Subscription name required.")
        if payload.price < 0:
            raise ValueError("Price must not be negative.")
        payload.currency = _validate_currency(payload.currency)
        payload.cycle = _validate_cycle(payload.cycle)
        payload.note = payload.note.strip() if payload.note else None
        payload.self_ratio = _validate_ratio(payload.self_ratio, "Self ratio")
        payload.advance_ratio = _validate_ratio(payload.advance_ratio, "Advance ratio")
        return payload


class SubscriptionUpdatePayload(BaseModel):
    name: str | None = None
    price: Decimal | None = None
    currency: str | None = None
    billing_date: date | None = None
    cycle: str | None = None
    note: str | None = None
    is_advance: bool | None = None
    self_ratio: int | None = None
    advance_ratio: int | None = None

    def validated_values(self) -> dict:
        values = self.model_dump(exclude_unset=True)
        for key in list(values):
            if values[key] is None and key != "note":
                raise ValueError(f"{key} cannot be null.")
        if "name" in values:
            values["name"] = values["name"].strip()
            if not values["name"]:
                raise ValueError("Subscription name required.")
        if "price" in values and values["price"] < 0:
            raise ValueError("Price must not be negative.")
        if "currency" in values:
            values["currency"] = _validate_currency(values["currency"])
        if "cycle" in values:
            values["cycle"] = _validate_cycle(values["cycle"])
        if "note" in values:
            values["note"] = values["note"].strip() if values["note"] else None
        if "self_ratio" in values:
            values["self_ratio"] = _validate_ratio(values["self_ratio"], "Self ratio")
        if "advance_ratio" in values:
            values["advance_ratio"] = _validate_ratio(values["advance_ratio"], "Advance ratio")
        if not values:
            raise ValueError("No fields to update.")
        return values


class SubscriptionResponse(BaseModel):
    id: int
    name: str
    price: Decimal
    currency: str
    billing_date: date
    cycle: str
    note: str | None = None
    is_advance: bool
    self_ratio: int
    advance_ratio: int
    created_at: datetime | None = None
    period: str
    self_amount: Decimal
    advance_amount: Decimal
    full_amount: Decimal
    next_billing_date: date


class SubscriptionSummaryResponse(BaseModel):
    period: str
    base_currency: str
    count: int
    total: Decimal
    advance_total: Decimal
    rates_stale: bool
    rates_degraded: bool


class ExchangeRatesResponse(BaseModel):
    base_currency: str
    rates: dict[str, Decimal]
    fetched_at: datetime
    stale: bool
    degraded: bool


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


PASSWORD_HASH = settings.password_hash or (
    hash_password(settings.password) if settings.password else None
)


def create_access_token(username: str) -> str:
    expires_at = datetime.now(timezone.utc) + settings.token_ttl
    return jwt.encode(
        {"sub": username, "exp": expires_at},
        settings.jwt_secret,
        algorithm=JWT_ALGORITHM,
    )


def get_username(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing bearer token.")
    try:
        claims = jwt.decode(token.strip(), settings.jwt_secret, algorithms=[JWT_ALGORITHM])
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid or expired token.") from exc
    username = claims.get("sub")
    if not username:
        raise HTTPException(status_code=401, detail="Invalid or expired token.")
    return username


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row["id"],
        name=row["name"],
        price=Decimal(str(row["price"])),
        currency=row["currency"],
        cycle=row["cycle"],
        billing_date=row["billing_date"],
        is_advance=bool(row["is_advance"]),
        self_ratio=row["self_ratio"],
        advance_ratio=row["advance_ratio"],
    )


def build_subscription_response(row, cost: NormalizedCost, period: str) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=row["id"],
        name=row["name"],
        price=Decimal(str(row["price"])),
        currency=row["currency"],
        billing_date=row["billing_date"],
        cycle=row["cycle"],
        note=row["note"],
        is_advance=bool(row["is_advance"]),
        self_ratio=row["self_ratio"],
        advance_ratio=row["advance_ratio"],
        created_at=row["created_at"],
        period=period,
        self_amount=quantize_money(cost.self_amount),
        advance_amount=quantize_money(cost.advance_amount),
        full_amount=quantize_money(cost.full_amount),
        next_billing_date=cost.next_billing_date,
    )


def fetch_active_rows(conn) -> list:
    result = conn.execute(
        select(subscriptions)
        .where(subscriptions.c.deleted_at.is_(None))
        .order_by(subscriptions.c.created_at.desc(), subscriptions.c.id.desc())
    )
    return result.mappings().all()


def normalize_row(row, period: str = DEFAULT_PERIOD) -> SubscriptionResponse:
    summary = normalize([row_to_subscription(row)], RATE_CACHE.get(), period)
    return build_subscription_response(row, summary.items[0], summary.period)


def parse_sort(value: str | None) -> SortOrder | None:
    if value is None or not value.strip():
        return None
    try:
        return SortOrder(value.strip().lower())
    except ValueError as exc:
        allowed = ", ".join(order.value for order in SortOrder)
        raise HTTPException(status_code=400, detail=f"Sort must be one of {allowed}.") from exc


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginPayload) -> TokenResponse:
    username_ok = bool(settings.username) and secrets.compare_digest(
        payload.username, settings.username
    )
    if not username_ok or not PASSWORD_HASH or not verify_password(
        payload.password, PASSWORD_HASH
    ):
        logger.info("auth.login_rejected", username=payload.username)
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    return TokenResponse(token=create_access_token(payload.username))


@app.get("/subscriptions", response_model=list[SubscriptionResponse])
def list_subscriptions(
    period: str | None = Query(None),
    sort: str | None = Query(None),
    authorization: str | None = Header(None),
) -> list[SubscriptionResponse]:
    get_username(authorization)
    order = parse_sort(sort)
    with engine.begin() as conn:
        rows = fetch_active_rows(conn)

    summary = normalize(
        [row_to_subscription(row) for row in rows],
        RATE_CACHE.get(),
        parse_period(period),
    )
    rows_by_id = {row["id"]: row for row in rows}
    items = summary.items if order is None else sort_costs(summary.items, order)
    return [
        build_subscription_response(rows_by_id[item.subscription.id], item, summary.period)
        for item in items
    ]


@app.get("/subscriptions/summary", response_model=SubscriptionSummaryResponse)
def summarize_subscriptions(
    period: str | None = Query(None),
    authorization: str | None = Header(None),
) -> SubscriptionSummaryResponse:
    get_username(authorization)
    with engine.begin() as conn:
        rows = fetch_active_rows(conn)

    snapshot = RATE_CACHE.get()
    summary = normalize(
        [row_to_subscription(row) for row in rows],
        snapshot,
        parse_period(period),
    )
    return SubscriptionSummaryResponse(
        period=summary.period,
        base_currency=BASE_CURRENCY,
        count=len(summary.items),
        total=quantize_money(summary.total),
        advance_total=quantize_money(summary.advance_total),
        rates_stale=snapshot.stale,
        rates_degraded=snapshot.degraded,
    )


@app.post("/subscriptions", response_model=SubscriptionResponse)
def create_subscription(
    payload: SubscriptionPayload,
    authorization: str | None = Header(None),
) -> SubscriptionResponse:
    get_username(authorization)
    try:
        payload = SubscriptionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(subscriptions)
        .values(**payload.model_dump())
        .returning(*subscriptions.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create subscription.")
    return normalize_row(row)


@app.patch("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
def update_subscription(
    subscription_id: int,
    payload: SubscriptionUpdatePayload,
    authorization: str | None = Header(None),
) -> SubscriptionResponse:
    get_username(authorization)
    try:
        values = payload.validated_values()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        update(subscriptions)
        .where(
            subscriptions.c.id == subscription_id,
            subscriptions.c.deleted_at.is_(None),
        )
        .values(**values)
        .returning(*subscriptions.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Subscription not found.")
    return normalize_row(row)


@app.delete("/subscriptions/{subscription_id}")
def delete_subscription(
    subscription_id: int,
    authorization: str | None = Header(None),
) -> dict:
    get_username(authorization)
    stmt = (
        update(subscriptions)
        .where(
            subscriptions.c.id == subscription_id,
            subscriptions.c.deleted_at.is_(None),
        )
        .values(deleted_at=func.now())
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Subscription not found.")
    return {"status": "deleted"}


def build_rates_response(snapshot: RateSnapshot) -> ExchangeRatesResponse:
    return ExchangeRatesResponse(
        base_currency=BASE_CURRENCY,
        rates=dict(snapshot.rates),
        fetched_at=snapshot.fetched_at,
        stale=snapshot.stale,
        degraded=snapshot.degraded,
    )


@app.get("/exchange-rates", response_model=ExchangeRatesResponse)
def get_exchange_rates(authorization: str | None = Header(None)) -> ExchangeRatesResponse:
    get_username(authorization)
    return build_rates_response(RATE_CACHE.get())


@app.post("/exchange-rates/refresh", response_model=ExchangeRatesResponse)
def refresh_exchange_rates(authorization: str | None = Header(None)) -> ExchangeRatesResponse:
    get_username(authorization)
    return build_rates_response(RATE_CACHE.refresh())
