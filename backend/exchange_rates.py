from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from http.client import HTTPException
import json
import os
from pathlib import Path
import threading
from types import MappingProxyType
from typing import Callable, Mapping, Protocol
from urllib.error import URLError
from urllib.parse import urlencode
from urllib.request import urlopen

from backend.log import get_logger

BASE_CURRENCY = "TWD"
SUPPORTED_CURRENCIES: tuple[str, ...] = ("TWD", "USD", "JPY", "HKD", "EUR", "CNY")
DEFAULT_CACHE_TTL = timedelta(hours=24)

logger = get_logger(__name__)


class RateCacheError(RuntimeError):
    """Base class for failures handled inside the rate cache."""


class RemoteFetchFailure(RateCacheError):
    """Raised when the remote rate source is unreachable or answers non-2xx."""


class MalformedResponse(RateCacheError):
    """Raised when the remote payload has no usable ``rates`` mapping."""


class PersistenceFailure(RateCacheError):
    """Raised when the cache file cannot be read or written."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateSnapshot:
    """One immutable rate table.

    Factors are expressed as base currency (TWD) per 1 unit of the keyed
    currency. ``stale`` marks real data served past its TTL because the
    remote source failed; ``degraded`` marks the placeholder table used when
    no real data exists at all.
    """

    rates: Mapping[str, Decimal]
    fetched_at: datetime = field(default_factory=_utcnow)
    stale: bool = False
    degraded: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", MappingProxyType(dict(self.rates)))

    def rate(self, currency: str) -> Decimal:
        return self.rates.get(currency.strip().upper(), Decimal("1"))


def degraded_snapshot(fetched_at: datetime | None = None) -> RateSnapshot:
    rates = {
        code: Decimal("1") if code == BASE_CURRENCY else Decimal("0")
        for code in SUPPORTED_CURRENCIES
    }
    return RateSnapshot(
        rates=rates,
        fetched_at=fetched_at or _utcnow(),
        degraded=True,
    )


class RateSource(Protocol):
    def fetch_rates(self) -> Mapping[str, object]:
        ...


@dataclass
class ExchangeRateHostSource:
    """Latest-rates endpoint quoting foreign currency per 1 base unit."""

    base_url: str = "https://api.exchangerate.host"
    base_currency: str = BASE_CURRENCY
    symbols: tuple[str, ...] = SUPPORTED_CURRENCIES
    timeout: float = 8.0

    def fetch_rates(self) -> Mapping[str, object]:
        query = urlencode({"base": self.base_currency, "symbols": ",".join(self.symbols)})
        url = f"{self.base_url.rstrip('/')}/latest?{query}"
        try:
            with urlopen(url, timeout=self.timeout) as response:
                payload = json.load(response)
        except (URLError, OSError, HTTPException) as exc:
            raise RemoteFetchFailure(f"Rate source unavailable: {exc}") from exc
        except ValueError as exc:
            raise MalformedResponse("Rate source returned invalid JSON") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise MalformedResponse("Rate source response missing rates")
        return rates


def invert_rates(
    remote_rates: Mapping[str, object],
    currencies: tuple[str, ...] = SUPPORTED_CURRENCIES,
) -> dict[str, Decimal]:
    """Turn "foreign per 1 TWD" quotes into "TWD per 1 foreign" factors."""
    inverted = {BASE_CURRENCY: Decimal("1")}
    for code in currencies:
        if code == BASE_CURRENCY:
            continue
        value = remote_rates.get(code)
        if value is None:
            raise MalformedResponse(f"Rate source response missing {code}")
        try:
            rate = Decimal(str(value))
            if not rate.is_finite() or rate <= 0:
                raise MalformedResponse(f"Invalid rate for {code}: {value!r}")
            inverted[code] = Decimal("1") / rate
        except ArithmeticError as exc:
            raise MalformedResponse(f"Invalid rate for {code}: {value!r}") from exc
    return inverted


class RateCache:
    """TTL-bounded holder of the current :class:`RateSnapshot`.

    Reads are lock-free: the current snapshot is an immutable value swapped
    in by reference. Misses funnel through one lock so that concurrent
    callers share a single remote fetch; callers that waited on an in-flight
    refresh receive its result instead of fetching again.
    """

    def __init__(
        self,
        source: RateSource,
        cache_path: Path | str | None = None,
        ttl: timedelta = DEFAULT_CACHE_TTL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._source = source
        self._cache_path = Path(cache_path) if cache_path else None
        self._ttl = ttl
        self._clock = clock or _utcnow
        self._snapshot: RateSnapshot | None = None
        self._last_result: RateSnapshot | None = None
        self._generation = 0
        self._refresh_lock = threading.Lock()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def get(self) -> RateSnapshot:
        snapshot = self._snapshot
        if snapshot is not None and self._is_fresh(snapshot):
            return snapshot

        generation = self._generation
        with self._refresh_lock:
            if generation != self._generation and self._last_result is not None:
                return self._last_result
            snapshot = self._snapshot
            if snapshot is not None and self._is_fresh(snapshot):
                return snapshot

            persisted = self._load_persisted()
            if persisted is not None:
                if snapshot is None or persisted.fetched_at > snapshot.fetched_at:
                    self._snapshot = persisted
                if self._is_fresh(persisted):
                    logger.info(
                        "exchange_rates.cache_file_hit",
                        path=str(self._cache_path),
                        fetched_at=persisted.fetched_at.isoformat(),
                    )
                    return persisted
            return self._refresh_locked()

    def refresh(self) -> RateSnapshot:
        generation = self._generation
        with self._refresh_lock:
            if generation != self._generation and self._last_result is not None:
                return self._last_result
            return self._refresh_locked()

    def _refresh_locked(self) -> RateSnapshot:
        try:
            rates = invert_rates(self._source.fetch_rates())
        except RateCacheError as exc:
            result = self._fallback(exc)
        else:
            result = RateSnapshot(rates=rates, fetched_at=self._clock())
            self._persist(result)
            self._snapshot = result
            logger.info("exchange_rates.refreshed", currencies=sorted(rates))
        self._last_result = result
        self._generation += 1
        return result

    def _fallback(self, exc: RateCacheError) -> RateSnapshot:
        previous = self._snapshot
        if previous is not None:
            logger.warning(
                "exchange_rates.fetch_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                fallback="stale",
                fetched_at=previous.fetched_at.isoformat(),
            )
            return replace(previous, stale=True)
        logger.warning(
            "exchange_rates.fetch_failed",
            error=str(exc),
            error_type=type(exc).__name__,
            fallback="degraded",
        )
        return degraded_snapshot(self._clock())

    def _is_fresh(self, snapshot: RateSnapshot) -> bool:
        return self._clock() - snapshot.fetched_at < self._ttl

    def _load_persisted(self) -> RateSnapshot | None:
        if self._cache_path is None or not self._cache_path.exists():
            return None
        try:
            return self._read_cache_file(self._cache_path)
        except PersistenceFailure as exc:
            logger.warning("exchange_rates.cache_read_failed", error=str(exc))
            return None

    def _persist(self, snapshot: RateSnapshot) -> None:
        if self._cache_path is None:
            return
        try:
            self._write_cache_file(self._cache_path, snapshot)
        except PersistenceFailure as exc:
            logger.warning("exchange_rates.cache_write_failed", error=str(exc))

    @staticmethod
    def _read_cache_file(path: Path) -> RateSnapshot:
        try:
            modified = path.stat().st_mtime
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise PersistenceFailure(f"Unreadable cache file {path}") from exc
        if not isinstance(payload, dict):
            raise PersistenceFailure(f"Cache file {path} is not a rates mapping")
        try:
            rates = {
                str(code).upper(): Decimal(str(value)) for code, value in payload.items()
            }
        except InvalidOperation as exc:
            raise PersistenceFailure(f"Cache file {path} holds a non-numeric rate") from exc
        invalid = sorted(
            code for code, value in rates.items() if not value.is_finite() or value < 0
        )
        if invalid:
            raise PersistenceFailure(f"Cache file {path} holds invalid rates for {invalid}")
        rates[BASE_CURRENCY] = Decimal("1")
        return RateSnapshot(
            rates=rates,
            fetched_at=datetime.fromtimestamp(modified, tz=timezone.utc),
        )

    @staticmethod
    def _write_cache_file(path: Path, snapshot: RateSnapshot) -> None:
        payload = {code: float(value) for code, value in snapshot.rates.items()}
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise PersistenceFailure(f"Unable to write cache file {path}") from exc
