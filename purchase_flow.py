"""
Per-session, per-video purchase state machine.

    BROWSING -> PAYMENT_CHOSEN -> PROCESSOR_PENDING -> PURCHASED -> ACCESS_REVEALED

Card and PayPal go through PROCESSOR_PENDING and complete on the processor's
confirmation. Crypto and manual contact have no confirmation channel: they
complete only when the buyer reports the payment, and reconciliation happens
out of band over the contact channel.

A processor error puts the flow back in PAYMENT_CHOSEN with the processor's
message in `last_error`. Each processor call is tagged with an attempt
number; a result that arrives after the flow was closed or restarted is
dropped.
"""

import logging
import threading
import time
from collections import OrderedDict
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from errors import InvalidTransitionError, NotFoundError, PaymentPathUnavailableError, PaymentProcessorError
from receipts import MANUAL_ACCESS_NOTICE, Receipt
from schemas import SiteConfig, Video
from wallets import CryptoWallet

logger = logging.getLogger(__name__)

COPIED_INDICATOR_SECONDS = 2.0
CURRENCY = "usd"
FLOW_IDLE_SECONDS = 30 * 60
MAX_FLOWS = 10000
MARKER_TTL_SECONDS = 10 * 60
MAX_MARKERS = 10000


class PaymentPath(str, Enum):
    CARD = "card"
    PAYPAL = "paypal"
    CRYPTO = "crypto"
    MANUAL_CONTACT = "manual_contact"


class PurchaseState(str, Enum):
    BROWSING = "browsing"
    PAYMENT_CHOSEN = "payment_chosen"
    PROCESSOR_PENDING = "processor_pending"
    PURCHASED = "purchased"
    ACCESS_REVEALED = "access_revealed"


MANUAL_PATHS = (PaymentPath.CRYPTO, PaymentPath.MANUAL_CONTACT)


def available_paths(config: SiteConfig) -> List[PaymentPath]:
    paths = []
    if config.stripe_publishable_key and config.stripe_secret_key:
        paths.append(PaymentPath.CARD)
    if config.paypal_client_id and config.paypal_client_secret:
        paths.append(PaymentPath.PAYPAL)
    if config.crypto:
        paths.append(PaymentPath.CRYPTO)
    if config.telegram_username:
        paths.append(PaymentPath.MANUAL_CONTACT)
    return paths


def contact_url(handle: str) -> Optional[str]:
    handle = (handle or "").strip().lstrip("@")
    return f"https://t.me/{handle}" if handle else None


def minor_units(price: float) -> int:
    return int((Decimal(str(price)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def decimal_amount(price: float) -> str:
    return str(Decimal(str(price)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class AccessArtifact(NamedTuple):
    product_link: Optional[str]
    notice: Optional[str]
    contact_url: Optional[str]


class PurchaseMarkerStore:
    """One-shot "just purchased" flags, keyed by session and video.

    `consume` reads and clears in one step, so a flag is seen exactly once.
    Unread flags expire after `ttl` seconds; the oldest go first past `max_marks`.
    """

    def __init__(self, ttl: float = MARKER_TTL_SECONDS, max_marks: int = MAX_MARKERS, clock: Callable[[], float] = time.monotonic):
        self._marks: "OrderedDict[Tuple[str, str], float]" = OrderedDict()
        self._ttl = ttl
        self._max = max_marks
        self._clock = clock
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        while self._marks:
            key, expires = next(iter(self._marks.items()))
            if expires > now and len(self._marks) <= self._max:
                break
            del self._marks[key]

    def mark(self, session_id: str, video_id: str) -> None:
        with self._lock:
            now = self._clock()
            key = (session_id, video_id)
            self._marks.pop(key, None)
            self._marks[key] = now + self._ttl
            self._purge(now)

    def consume(self, session_id: str, video_id: str) -> bool:
        with self._lock:
            self._purge(self._clock())
            return self._marks.pop((session_id, video_id), None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._marks)


class PurchaseFlow:
    def __init__(
        self,
        video: Video,
        session_id: str,
        config_provider,
        checkout_gateway,
        paypal,
        markers: PurchaseMarkerStore,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.video = video
        self.session_id = session_id
        self._config_provider = config_provider
        self._checkout = checkout_gateway
        self._paypal = paypal
        self._markers = markers
        self._clock = clock

        self.state = PurchaseState.BROWSING
        self.path: Optional[PaymentPath] = None
        self.last_error: Optional[str] = None
        self.closed = False
        self.checkout_session_id: Optional[str] = None
        self.paypal_order_id: Optional[str] = None
        self.purchased_on: Optional[date] = None

        self._attempt = 0
        self._copied_index: Optional[int] = None
        self._copied_until = 0.0

    # Policy

    @property
    def config(self) -> SiteConfig:
        return self._config_provider.config

    def available_paths(self) -> List[PaymentPath]:
        return available_paths(self.config)

    def refresh_video(self, video: Video) -> None:
        """Pick up admin edits to the video, except while a processor holds the amount."""
        if video.id != self.video.id or self.state is PurchaseState.PROCESSOR_PENDING:
            return
        self.video = video

    # Transitions

    def _require(self, *states: PurchaseState, paths: Tuple[PaymentPath, ...] = ()) -> None:
        if self.closed:
            raise InvalidTransitionError("Purchase flow was closed")
        if self.state not in states:
            raise InvalidTransitionError(f"Cannot do that while {self.state.value}")
        if paths and self.path not in paths:
            raise InvalidTransitionError(f"Not available for payment path {self.path.value if self.path else 'none'}")

    def choose(self, path: PaymentPath) -> PurchaseState:
        path = PaymentPath(path)
        self._require(PurchaseState.BROWSING, PurchaseState.PAYMENT_CHOSEN)
        if path not in self.available_paths():
            raise PaymentPathUnavailableError(f"Payment method {path.value} is not available")
        self.path = path
        self.state = PurchaseState.PAYMENT_CHOSEN
        self.last_error = None
        logger.info("Session %s chose %s for video %s", self.session_id, path.value, self.video.id)
        return self.state

    def _begin_processor_call(self, *states: PurchaseState, path: PaymentPath) -> int:
        self._require(*states, paths=(path,))
        if path not in self.available_paths():
            raise PaymentPathUnavailableError(f"Payment method {path.value} is not available")
        self._attempt += 1
        self.state = PurchaseState.PROCESSOR_PENDING
        self.last_error = None
        return self._attempt

    def _is_current(self, attempt: int) -> bool:
        return not self.closed and attempt == self._attempt

    def _processor_failed(self, attempt: int, error: PaymentProcessorError) -> None:
        if not self._is_current(attempt):
            logger.info("Dropping late processor error for video %s: %s", self.video.id, error.message)
            return
        logger.warning("Payment via %s failed for video %s: %s", self.path.value, self.video.id, error.message)
        self.state = PurchaseState.PAYMENT_CHOSEN
        self.last_error = error.message
        raise error

    def _mark_purchased(self) -> None:
        self.state = PurchaseState.PURCHASED
        self.purchased_on = datetime.now(timezone.utc).date()
        self._markers.mark(self.session_id, self.video.id)
        logger.info("Video %s purchased via %s in session %s", self.video.id, self.path.value, self.session_id)

    def start_card_checkout(self, success_url: str, cancel_url: str) -> Optional[str]:
        attempt = self._begin_processor_call(PurchaseState.PAYMENT_CHOSEN, path=PaymentPath.CARD)
        try:
            session_id = self._checkout.create_session(
                amount=minor_units(self.video.price),
                currency=CURRENCY,
                name=self.video.title,
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except PaymentProcessorError as e:
            self._processor_failed(attempt, e)
            return None
        if not self._is_current(attempt):
            logger.info("Dropping late checkout session for video %s", self.video.id)
            return None
        self.checkout_session_id = session_id
        return session_id

    def confirm_card_checkout(self, session_id: Optional[str] = None) -> PurchaseState:
        self._require(PurchaseState.PROCESSOR_PENDING, paths=(PaymentPath.CARD,))
        session_id = session_id or self.checkout_session_id
        if not session_id or session_id != self.checkout_session_id:
            raise InvalidTransitionError("Unknown checkout session")
        attempt = self._attempt
        try:
            paid = self._checkout.is_paid(session_id)
        except PaymentProcessorError as e:
            self._processor_failed(attempt, e)
            return self.state
        if not self._is_current(attempt):
            return self.state
        if not paid:
            self._processor_failed(attempt, PaymentProcessorError("Payment was not completed", processor="card"))
            return self.state
        self._mark_purchased()
        return self.state

    def create_paypal_order(self) -> Optional[str]:
        attempt = self._begin_processor_call(PurchaseState.PAYMENT_CHOSEN, path=PaymentPath.PAYPAL)
        config = self.config
        try:
            order_id = self._paypal.create_order(
                config.paypal_client_id,
                config.paypal_client_secret,
                amount=decimal_amount(self.video.price),
                description=f"Purchase of video: {self.video.title}",
            )
        except PaymentProcessorError as e:
            self._processor_failed(attempt, e)
            return None
        if not self._is_current(attempt):
            logger.info("Dropping late PayPal order for video %s", self.video.id)
            return None
        self.paypal_order_id = order_id
        return order_id

    def capture_paypal_order(self, order_id: str) -> PurchaseState:
        self._require(PurchaseState.PROCESSOR_PENDING, paths=(PaymentPath.PAYPAL,))
        if order_id != self.paypal_order_id:
            raise InvalidTransitionError("Unknown PayPal order")
        attempt = self._attempt
        config = self.config
        try:
            self._paypal.capture_order(config.paypal_client_id, config.paypal_client_secret, order_id)
        except PaymentProcessorError as e:
            self._processor_failed(attempt, e)
            return self.state
        if self._is_current(attempt):
            self._mark_purchased()
        return self.state

    def copy_wallet(self, index: int) -> CryptoWallet:
        """Hand out a wallet address and light the "copied" indicator for two seconds.

        Copying never completes the purchase.
        """
        self._require(PurchaseState.PAYMENT_CHOSEN, paths=(PaymentPath.CRYPTO,))
        wallets = self.config.crypto
        if index < 0 or index >= len(wallets):
            raise NotFoundError("wallet", str(index))
        self._copied_index = index
        self._copied_until = self._clock() + COPIED_INDICATOR_SECONDS
        return CryptoWallet.parse(wallets[index])

    @property
    def copied_wallet_index(self) -> Optional[int]:
        if self._copied_index is not None and self._clock() < self._copied_until:
            return self._copied_index
        return None

    def report_manual_payment(self) -> PurchaseState:
        self._require(PurchaseState.PAYMENT_CHOSEN, paths=MANUAL_PATHS)
        self._mark_purchased()
        return self.state

    def reveal_access(self) -> AccessArtifact:
        self._require(PurchaseState.PURCHASED, PurchaseState.ACCESS_REVEALED)
        self.state = PurchaseState.ACCESS_REVEALED
        return self.access_artifact()

    def access_artifact(self) -> AccessArtifact:
        link = self.video.product_link
        return AccessArtifact(
            product_link=link or None,
            notice=None if link else MANUAL_ACCESS_NOTICE,
            contact_url=contact_url(self.config.telegram_username),
        )

    def receipt(self) -> Receipt:
        self._require(PurchaseState.ACCESS_REVEALED)
        return Receipt(
            brand=self.config.site_name,
            title=self.video.title,
            purchase_date=self.purchased_on or datetime.now(timezone.utc).date(),
            price=self.video.price,
            product_link=self.video.product_link,
        )

    def close(self) -> None:
        self.closed = True

    def describe(self) -> Dict[str, object]:
        return {
            "video_id": self.video.id,
            "state": self.state.value,
            "path": self.path.value if self.path else None,
            "last_error": self.last_error,
            "available_paths": [p.value for p in self.available_paths()],
            "copied_wallet_index": self.copied_wallet_index,
        }


class PurchaseFlowRegistry:
    """Live flows keyed by (session id, video id).

    A flow nobody touched for `idle_seconds` is closed and dropped, and past
    `max_flows` the least recently used one goes first.
    """

    def __init__(
        self,
        flow_factory: Callable[[Video, str], PurchaseFlow],
        idle_seconds: float = FLOW_IDLE_SECONDS,
        max_flows: int = MAX_FLOWS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._factory = flow_factory
        self._flows: "OrderedDict[Tuple[str, str], Tuple[PurchaseFlow, float]]" = OrderedDict()
        self._idle = idle_seconds
        self._max = max_flows
        self._clock = clock
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        while self._flows:
            key, (flow, last_seen) = next(iter(self._flows.items()))
            if now - last_seen < self._idle and len(self._flows) <= self._max and not flow.closed:
                break
            del self._flows[key]
            flow.close()
            logger.debug("Evicted purchase flow for session %s, video %s", *key)

    def get_or_create(self, session_id: str, video: Video) -> PurchaseFlow:
        """The live flow for this session and video, refreshed with `video`."""
        key = (session_id, video.id)
        with self._lock:
            now = self._clock()
            entry = self._flows.pop(key, None)
            if entry is None or entry[0].closed or now - entry[1] >= self._idle:
                if entry is not None:
                    entry[0].close()
                flow = self._factory(video, session_id)
            else:
                flow = entry[0]
                flow.refresh_video(video)
            self._flows[key] = (flow, now)
            self._evict(now)
            return flow

    def close(self, session_id: str, video_id: str) -> bool:
        with self._lock:
            entry = self._flows.pop((session_id, video_id), None)
        if entry is None:
            return False
        entry[0].close()
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._flows)
