"""
Flash-Sale Allocator - Reserves and releases limited flash-sale stock.

sold_quantity is the only shared mutable state in the engine. Every
allocate/release on a sale runs under that sale's own lock, so the
capacity check and the increment are one indivisible step and different
sales never block each other. A caller that cannot get the lock within
the timeout gets a failed allocation, never an assumed success.

Reservations tie allocated units to an order so the reconciliation job can
release stock that was never confirmed (release_expired). Confirmed
reservations leave the ledger, so it only ever holds pending ones.
"""
import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, Optional

from ..engine.models import FlashSale, to_naive_local

logger = logging.getLogger(__name__)


class SaleState(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    SOLD_OUT = "sold_out"
    ENDED = "ended"
    CLOSED = "closed"


@dataclass
class Reservation:
    """Units of a flash sale held for one order until confirmed or released."""
    reservation_id: str
    sale_id: str
    quantity: int
    order_id: str
    created_at: datetime
    confirmed: bool = False


@dataclass
class TimeRemaining:
    """Countdown to a sale's end."""
    days: int
    hours: int
    minutes: int
    seconds: int
    expired: bool


def sale_state(sale: FlashSale, now: datetime) -> SaleState:
    """Derive the lifecycle state of a sale at a point in time."""
    if not sale.is_active:
        return SaleState.CLOSED
    if now < sale.start_time:
        return SaleState.SCHEDULED
    if now > sale.end_time:
        return SaleState.ENDED
    if sale.max_quantity is not None and sale.sold_quantity >= sale.max_quantity:
        return SaleState.SOLD_OUT
    return SaleState.ACTIVE


class FlashSaleAllocator:
    """
    Owns flash sales and serializes every change to their sold_quantity.

    allocate() and release() are linearizable per sale. is_active() and
    get_remaining() read without locking and are for display only.
    """

    def __init__(
        self,
        sales: Optional[Iterable[FlashSale]] = None,
        lock_timeout: Optional[float] = 2.0,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.lock_timeout = lock_timeout
        self._clock = clock or datetime.now
        self._sales: dict[str, FlashSale] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._reservations: dict[str, Reservation] = {}
        self._reservations_lock = threading.Lock()

        for sale in sales or []:
            self.register(sale)

    def _now(self, now: Optional[datetime]) -> datetime:
        """Naive local time, so it compares with the sale windows."""
        return to_naive_local(now or self._clock())

    # -- Registry ---------------------------------------------------------

    def register(self, sale: FlashSale):
        """Take ownership of a sale definition (a private copy is kept)."""
        with self._registry_lock:
            if sale.sale_id in self._sales:
                raise ValueError(f"Flash sale '{sale.sale_id}' already registered")
            self._sales[sale.sale_id] = replace(sale)
            self._locks[sale.sale_id] = threading.Lock()
        logger.info("Registered flash sale %s (max_quantity=%s)", sale.sale_id, sale.max_quantity)

    def get(self, sale_id: str) -> FlashSale:
        """Snapshot copy of a sale. Raises KeyError for unknown ids."""
        return replace(self._sales[sale_id])

    def sale_ids(self) -> list[str]:
        return sorted(self._sales)

    def close(self, sale_id: str) -> bool:
        """Permanently deactivate a sale."""
        lock = self._locks.get(sale_id)
        if lock is None:
            return False
        with lock:
            self._sales[sale_id].is_active = False
        logger.info("Flash sale %s closed", sale_id)
        return True

    # -- Read-only helpers (may be stale) ---------------------------------

    def state(self, sale_id: str, now: Optional[datetime] = None) -> SaleState:
        return sale_state(self._sales[sale_id], self._now(now))

    def is_active(self, sale_id: str, now: Optional[datetime] = None) -> bool:
        sale = self._sales.get(sale_id)
        if sale is None:
            return False
        return sale_state(sale, self._now(now)) == SaleState.ACTIVE

    def get_remaining(self, sale_id: str) -> Optional[int]:
        """Units left; None for an unlimited sale, 0 for an unknown one."""
        sale = self._sales.get(sale_id)
        if sale is None:
            return 0
        if sale.max_quantity is None:
            return None
        return max(0, sale.max_quantity - sale.sold_quantity)

    def active_sales(self, now: Optional[datetime] = None) -> list[FlashSale]:
        now = self._now(now)
        return [
            replace(sale) for sale_id, sale in sorted(self._sales.items())
            if sale_state(sale, now) == SaleState.ACTIVE
        ]

    def time_remaining(self, sale_id: str, now: Optional[datetime] = None) -> TimeRemaining:
        """Countdown until the sale's end time."""
        sale = self._sales[sale_id]
        diff = int((sale.end_time - self._now(now)).total_seconds())
        if diff <= 0:
            return TimeRemaining(days=0, hours=0, minutes=0, seconds=0, expired=True)

        days, rest = divmod(diff, 86400)
        hours, rest = divmod(rest, 3600)
        minutes, seconds = divmod(rest, 60)
        return TimeRemaining(days=days, hours=hours, minutes=minutes, seconds=seconds, expired=False)

    # -- Allocation -------------------------------------------------------

    def _acquire(self, sale_id: str, timeout: Optional[float]) -> Optional[threading.Lock]:
        lock = self._locks.get(sale_id)
        if lock is None:
            logger.warning("Unknown flash sale %s", sale_id)
            return None

        wait = self.lock_timeout if timeout is None else timeout
        acquired = lock.acquire(timeout=wait) if wait is not None else lock.acquire()
        if not acquired:
            logger.warning("Timed out waiting for flash sale %s after %.2fs", sale_id, wait)
            return None
        return lock

    def allocate(
        self,
        sale_id: str,
        quantity: int,
        now: Optional[datetime] = None,
        timeout: Optional[float] = None
    ) -> bool:
        """
        Atomically reserve quantity units against the sale's cap.

        All-or-nothing: either the full quantity is added to sold_quantity or
        nothing changes and False is returned.
        """
        if quantity < 1:
            logger.warning("Rejected allocation of %d units for flash sale %s", quantity, sale_id)
            return False

        lock = self._acquire(sale_id, timeout)
        if lock is None:
            return False

        try:
            sale = self._sales[sale_id]
            state = sale_state(sale, self._now(now))
            if state != SaleState.ACTIVE:
                logger.warning("Flash sale %s is %s; allocation rejected", sale_id, state.value)
                return False

            if sale.max_quantity is not None and sale.sold_quantity + quantity > sale.max_quantity:
                logger.warning(
                    "Flash sale %s quantity exceeded: sold=%d requested=%d max=%d",
                    sale_id, sale.sold_quantity, quantity, sale.max_quantity
                )
                return False

            sale.sold_quantity += quantity
            logger.info("Allocated %d units for flash sale %s (sold=%d)", quantity, sale_id, sale.sold_quantity)
            return True
        finally:
            lock.release()

    def release(
        self,
        sale_id: str,
        quantity: int,
        now: Optional[datetime] = None,
        timeout: Optional[float] = None
    ) -> bool:
        """
        Return quantity units to the sale.

        Never lets sold_quantity go below zero: an over-release is clamped and
        logged as an error. Ended or closed sales are read-only.
        """
        if quantity < 1:
            return False

        lock = self._acquire(sale_id, timeout)
        if lock is None:
            return False

        try:
            sale = self._sales[sale_id]
            state = sale_state(sale, self._now(now))
            if state in (SaleState.ENDED, SaleState.CLOSED):
                logger.warning("Flash sale %s is %s; release ignored", sale_id, state.value)
                return False

            if quantity > sale.sold_quantity:
                logger.error(
                    "Release of %d units for flash sale %s exceeds sold quantity %d; clamping to 0",
                    quantity, sale_id, sale.sold_quantity
                )
                sale.sold_quantity = 0
            else:
                sale.sold_quantity -= quantity

            logger.info("Released %d units for flash sale %s (sold=%d)", quantity, sale_id, sale.sold_quantity)
            return True
        finally:
            lock.release()

    # -- Reservations -----------------------------------------------------

    def reserve(
        self,
        sale_id: str,
        quantity: int,
        order_id: str,
        now: Optional[datetime] = None
    ) -> Optional[Reservation]:
        """Allocate and record the units against an order."""
        now = self._now(now)
        if not self.allocate(sale_id, quantity, now=now):
            return None

        reservation = Reservation(
            reservation_id=uuid.uuid4().hex,
            sale_id=sale_id,
            quantity=quantity,
            order_id=str(order_id),
            created_at=now,
        )
        with self._reservations_lock:
            self._reservations[reservation.reservation_id] = reservation
        return reservation

    def confirm(self, reservation_id: str) -> bool:
        """
        Mark a reservation as backed by a completed order.

        Confirmed units stay sold, so the reservation leaves the ledger.
        """
        with self._reservations_lock:
            reservation = self._reservations.pop(reservation_id, None)
        if reservation is None:
            return False
        reservation.confirmed = True
        return True

    def _settle(self, reservation: Reservation, now: datetime) -> bool:
        """
        Give a reservation's units back.

        True once the reservation can leave the ledger: its units were
        released, or its sale is read-only and nothing can be released.
        """
        if self.release(reservation.sale_id, reservation.quantity, now=now):
            return True

        sale = self._sales.get(reservation.sale_id)
        if sale is None or sale_state(sale, now) in (SaleState.ENDED, SaleState.CLOSED):
            logger.warning(
                "Dropping reservation %s: flash sale %s no longer accepts releases",
                reservation.reservation_id, reservation.sale_id
            )
            return True
        return False

    def _take(self, reservation_ids: Iterable[str]) -> list[Reservation]:
        with self._reservations_lock:
            return [self._reservations.pop(rid) for rid in reservation_ids if rid in self._reservations]

    def _restore(self, reservations: Iterable[Reservation]):
        with self._reservations_lock:
            for reservation in reservations:
                self._reservations[reservation.reservation_id] = reservation

    def cancel(self, reservation_id: str, now: Optional[datetime] = None) -> bool:
        """
        Drop a reservation and give its units back.

        If the units cannot be released (lock timeout) the reservation stays
        pending so a later cancel or release_expired can retry.
        """
        now = self._now(now)
        taken = self._take([reservation_id])
        if not taken:
            return False

        if self._settle(taken[0], now):
            return True
        self._restore(taken)
        return False

    def pending_reservations(self) -> list[Reservation]:
        with self._reservations_lock:
            return [replace(r) for r in self._reservations.values()]

    def release_expired(self, grace_seconds: int, now: Optional[datetime] = None) -> list[Reservation]:
        """
        Release unconfirmed reservations older than the grace period.

        Called by the reconciliation job. Returns the reservations that left
        the ledger; those whose release failed are kept for the next run.
        """
        now = self._now(now)
        cutoff = now - timedelta(seconds=grace_seconds)

        with self._reservations_lock:
            expired_ids = [r.reservation_id for r in self._reservations.values() if r.created_at <= cutoff]
        expired = self._take(expired_ids)

        settled, retry = [], []
        for reservation in expired:
            logger.info(
                "Releasing expired reservation %s (order %s, %d units of %s)",
                reservation.reservation_id, reservation.order_id, reservation.quantity, reservation.sale_id
            )
            if self._settle(reservation, now):
                settled.append(reservation)
            else:
                retry.append(reservation)

        if retry:
            logger.warning("%d expired reservations could not be released; will retry", len(retry))
            self._restore(retry)
        return settled
