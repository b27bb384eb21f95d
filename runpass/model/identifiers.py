# model/identifiers.py
"""
Order numbers and bib numbers.

Order number: <PREFIX>-<YYYYMMDD>-<base36 suffix>, e.g. FR-20251019-K3Z9QA
Bib number:   zero-padded digits from [bib_min, bib_max], e.g. 00042

Both are existence-checked before use and retried a bounded number of
times. The UNIQUE constraints on orders stay authoritative: a concurrent
writer that slips between check and insert surfaces as IntegrityError and
the caller retries its transaction.
"""

from __future__ import annotations
import logging
import random
import secrets
import string
from datetime import date
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..errors import IdentifierExhausted
from ..helpers import today_utc

logger = logging.getLogger(__name__)

BASE36 = string.digits + string.ascii_uppercase

# suffix grows by this much for the second half of the attempts
WIDEN_BY = 2


async def _exists(db: AsyncSession, column: str, value: str) -> bool:
    if column not in ("order_number", "bib_number"):
        raise ValueError(f"not an identifier column: {column}")
    row = (await db.execute(
        text(f"SELECT 1 FROM orders WHERE {column} = :v"), {"v": value}
    )).first()
    return row is not None


class IdentifierGenerator:
    def __init__(
        self,
        *,
        prefix: str = "FR",
        suffix_length: int = 6,
        max_attempts: int = 8,
        bib_min: int = 1,
        bib_max: int = 99_999,
        bib_width: int = 5,
        rng: Optional[random.Random] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.prefix = prefix
        self.suffix_length = suffix_length
        self.max_attempts = max_attempts
        self.bib_min = bib_min
        self.bib_max = bib_max
        self.bib_width = bib_width
        self._rng = rng or secrets.SystemRandom()

    @classmethod
    def from_settings(cls, settings: Settings) -> IdentifierGenerator:
        return cls(
            prefix=settings.order_number_prefix,
            suffix_length=settings.order_number_suffix_length,
            max_attempts=settings.identifier_max_attempts,
            bib_min=settings.bib_min,
            bib_max=settings.bib_max,
            bib_width=settings.bib_width,
        )

    # ---- order numbers

    def order_number_candidate(self, day: date, attempt: int = 0) -> str:
        length = self.suffix_length
        if attempt >= max(1, self.max_attempts // 2):
            length += WIDEN_BY
        suffix = "".join(self._rng.choice(BASE36) for _ in range(length))
        return f"{self.prefix}-{day:%Y%m%d}-{suffix}"

    async def new_order_number(
        self, db: AsyncSession, day: date | None = None
    ) -> str:
        day = day or today_utc()
        for attempt in range(self.max_attempts):
            candidate = self.order_number_candidate(day, attempt)
            if not await _exists(db, "order_number", candidate):
                return candidate
            logger.warning("order number collision", extra={"attempt": attempt})
        raise IdentifierExhausted("order number", self.max_attempts)

    # ---- bib numbers

    def format_bib(self, n: int) -> str:
        return str(n).zfill(self.bib_width)

    async def new_bib_number(self, db: AsyncSession) -> str:
        for attempt in range(self.max_attempts):
            candidate = self.format_bib(
                self._rng.randint(self.bib_min, self.bib_max)
            )
            if not await _exists(db, "bib_number", candidate):
                return candidate
            logger.warning("bib number collision", extra={"attempt": attempt})

        # random draws keep colliding: the range is filling up, so take the
        # lowest free number instead
        free = await self._lowest_free_bib(db)
        if free is None:
            raise IdentifierExhausted("bib number", self.max_attempts)
        return self.format_bib(free)

    async def _lowest_free_bib(self, db: AsyncSession) -> Optional[int]:
        rows = (await db.execute(text("""
            SELECT bib_number FROM orders WHERE bib_number IS NOT NULL
        """))).scalars().all()
        taken = sorted({int(b) for b in rows if b and b.isdigit()})
        expected = self.bib_min
        for n in taken:
            if n < expected:
                continue
            if n > expected:
                break
            expected += 1
        return expected if expected <= self.bib_max else None
