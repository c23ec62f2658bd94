from datetime import date
from unittest.mock import MagicMock

import pytest

from errors import InvalidTransitionError, NotFoundError, PaymentPathUnavailableError, PaymentProcessorError
from payments import PayPalClient
from purchase_flow import (
    PaymentPath,
    PurchaseFlow,
    PurchaseFlowRegistry,
    PurchaseMarkerStore,
    PurchaseState,
    available_paths,
    contact_url,
    decimal_amount,
    minor_units,
)
from receipts import MANUAL_ACCESS_NOTICE
from schemas import SiteConfig, Video

FULL_CONFIG = SiteConfig(
    site_name="ClipShop",
    paypal_client_id="pp-id",
    paypal_client_secret="pp-secret",
    stripe_publishable_key="pk_test",
    stripe_secret_key="sk_test",
    telegram_username="clipshop_support",
    crypto=["BTC - Bitcoin\nbc1qxyz", "ETH - Ethereum\n0xabc"],
)


class ConfigHolder:
    def __init__(self, config):
        self.config = config


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def video():
    return Video(id="vid1", title="Sunset Timelapse", price=9.99, product_link="https://x/y")


@pytest.fixture
def gateway():
    gateway = MagicMock()
    gateway.create_session.return_value = "cs_test_1"
    gateway.is_paid.return_value = True
    return gateway


@pytest.fixture
def paypal():
    paypal = MagicMock()
    paypal.create_order.return_value = "ORDER-1"
    paypal.capture_order.return_value = {"status": "COMPLETED"}
    return paypal


@pytest.fixture
def markers():
    return PurchaseMarkerStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_flow(video, gateway, paypal, markers, clock):
    def _make(config=FULL_CONFIG, video=video):
        return PurchaseFlow(video, "session-1", ConfigHolder(config), gateway, paypal, markers, clock=clock)

    return _make


class TestAvailablePaths:
    def test_all_configured(self):
        assert available_paths(FULL_CONFIG) == [
            PaymentPath.CARD,
            PaymentPath.PAYPAL,
            PaymentPath.CRYPTO,
            PaymentPath.MANUAL_CONTACT,
        ]

    def test_card_needs_publishable_key(self):
        config = FULL_CONFIG.model_copy(update={"stripe_publishable_key": ""})
        assert PaymentPath.CARD not in available_paths(config)

    def test_paypal_needs_secret(self):
        config = FULL_CONFIG.model_copy(update={"paypal_client_secret": ""})
        assert PaymentPath.PAYPAL not in available_paths(config)

    def test_crypto_needs_wallets(self):
        config = FULL_CONFIG.model_copy(update={"crypto": []})
        assert PaymentPath.CRYPTO not in available_paths(config)

    def test_nothing_configured(self):
        assert available_paths(SiteConfig()) == []


class TestAmounts:
    def test_minor_units(self):
        assert minor_units(9.99) == 999
        assert minor_units(0.295) == 30
        assert minor_units(10) == 1000

    def test_decimal_amount(self):
        assert decimal_amount(9.99) == "9.99"
        assert decimal_amount(5) == "5.00"

    def test_contact_url(self):
        assert contact_url("@clipshop") == "https://t.me/clipshop"
        assert contact_url("") is None


class TestChoose:
    def test_choose_available_path(self, make_flow):
        flow = make_flow()
        assert flow.choose(PaymentPath.CRYPTO) == PurchaseState.PAYMENT_CHOSEN
        assert flow.path == PaymentPath.CRYPTO

    def test_switch_path_before_paying(self, make_flow):
        flow = make_flow()
        flow.choose(PaymentPath.CRYPTO)
        flow.choose("paypal")
        assert flow.path == PaymentPath.PAYPAL

    def test_unavailable_card(self, make_flow):
        flow = make_flow(FULL_CONFIG.model_copy(update={"stripe_publishable_key": ""}))
        with pytest.raises(PaymentPathUnavailableError):
            flow.choose(PaymentPath.CARD)
        assert flow.state == PurchaseState.BROWSING

    def test_unavailable_crypto(self, make_flow):
        flow = make_flow(FULL_CONFIG.model_copy(update={"crypto": []}))
        with pytest.raises(PaymentPathUnavailableError):
            flow.choose(PaymentPath.CRYPTO)


class TestCardPath:
    def test_checkout_and_confirm(self, make_flow, gateway, markers):
        flow = make_flow()
        flow.choose(PaymentPath.CARD)

        session_id = flow.start_card_checkout("https://shop/success", "https://shop/cancel")

        assert session_id == "cs_test_1"
        assert flow.state == PurchaseState.PROCESSOR_PENDING
        gateway.create_session.assert_called_once_with(
            amount=999,
            currency="usd",
            name="Sunset Timelapse",
            success_url="https://shop/success",
            cancel_url="https://shop/cancel",
        )

        assert flow.confirm_card_checkout("cs_test_1") == PurchaseState.PURCHASED
        assert markers.consume("session-1", "vid1")

    def test_processor_error_reverts_with_message(self, make_flow, gateway):
        gateway.create_session.side_effect = PaymentProcessorError("Your card was declined.", processor="card")
        flow = make_flow()
        flow.choose(PaymentPath.CARD)

        with pytest.raises(PaymentProcessorError):
            flow.start_card_checkout("s", "c")

        assert flow.state == PurchaseState.PAYMENT_CHOSEN
        assert flow.last_error == "Your card was declined."

    def test_unpaid_session(self, make_flow, gateway):
        gateway.is_paid.return_value = False
        flow = make_flow()
        flow.choose(PaymentPath.CARD)
        flow.start_card_checkout("s", "c")

        with pytest.raises(PaymentProcessorError, match="Payment was not completed"):
            flow.confirm_card_checkout()
        assert flow.state == PurchaseState.PAYMENT_CHOSEN

    def test_unknown_session_id(self, make_flow):
        flow = make_flow()
        flow.choose(PaymentPath.CARD)
        flow.start_card_checkout("s", "c")

        with pytest.raises(InvalidTransitionError):
            flow.confirm_card_checkout("cs_other")


class TestPayPalPath:
    def test_end_to_end(self, make_flow, paypal):
        flow = make_flow()
        flow.choose(PaymentPath.PAYPAL)

        order_id = flow.create_paypal_order()
        flow.capture_paypal_order(order_id)
        artifact = flow.reveal_access()

        paypal.create_order.assert_called_once_with(
            "pp-id", "pp-secret", amount="9.99", description="Purchase of video: Sunset Timelapse"
        )
        assert flow.state == PurchaseState.ACCESS_REVEALED
        assert artifact.product_link == "https://x/y"
        assert artifact.notice is None

    def test_capture_failure_reverts(self, make_flow, paypal):
        paypal.capture_order.side_effect = PaymentProcessorError("INSTRUMENT_DECLINED", processor="paypal")
        flow = make_flow()
        flow.choose(PaymentPath.PAYPAL)
        flow.create_paypal_order()

        with pytest.raises(PaymentProcessorError):
            flow.capture_paypal_order("ORDER-1")

        assert flow.state == PurchaseState.PAYMENT_CHOSEN
        assert flow.last_error == "INSTRUMENT_DECLINED"

    def test_retry_after_failure_clears_error(self, make_flow, paypal):
        paypal.create_order.side_effect = [PaymentProcessorError("timeout"), "ORDER-2"]
        flow = make_flow()
        flow.choose(PaymentPath.PAYPAL)
        with pytest.raises(PaymentProcessorError):
            flow.create_paypal_order()

        assert flow.create_paypal_order() == "ORDER-2"
        assert flow.last_error is None

    def test_malformed_token_reply_leaves_flow_retryable(self, video, gateway, markers, clock):
        token_reply = MagicMock(status_code=200)
        token_reply.json.return_value = {}
        http = MagicMock()
        http.post.return_value = token_reply
        flow = PurchaseFlow(
            video, "session-1", ConfigHolder(FULL_CONFIG), gateway,
            PayPalClient("https://paypal.test", session=http), markers, clock=clock,
        )
        flow.choose(PaymentPath.PAYPAL)

        with pytest.raises(PaymentProcessorError):
            flow.create_paypal_order()

        assert flow.state == PurchaseState.PAYMENT_CHOSEN
        assert flow.last_error == "PayPal returned no access token"
        assert flow.choose(PaymentPath.MANUAL_CONTACT) == PurchaseState.PAYMENT_CHOSEN


class TestLateResults:
    def test_result_after_close_is_dropped(self, make_flow, paypal, markers):
        flow = make_flow()
        flow.choose(PaymentPath.PAYPAL)
        flow.create_paypal_order()

        def close_then_succeed(*args, **kwargs):
            flow.close()
            return {"status": "COMPLETED"}

        paypal.capture_order.side_effect = close_then_succeed
        flow.capture_paypal_order("ORDER-1")

        assert flow.state != PurchaseState.PURCHASED
        assert not markers.consume("session-1", "vid1")

    def test_error_after_close_is_dropped(self, make_flow, gateway):
        flow = make_flow()
        flow.choose(PaymentPath.CARD)

        def close_then_fail(**kwargs):
            flow.close()
            raise PaymentProcessorError("too late")

        gateway.create_session.side_effect = close_then_fail

        assert flow.start_card_checkout("s", "c") is None
        assert flow.last_error is None

    def test_closed_flow_rejects_actions(self, make_flow):
        flow = make_flow()
        flow.close()
        with pytest.raises(InvalidTransitionError):
            flow.choose(PaymentPath.CRYPTO)


class TestManualPaths:
    def test_crypto_copy_indicator_expires(self, make_flow, clock):
        flow = make_flow()
        flow.choose(PaymentPath.CRYPTO)

        wallet = flow.copy_wallet(1)

        assert wallet.address == "0xabc"
        assert flow.copied_wallet_index == 1
        clock.now += 1.9
        assert flow.copied_wallet_index == 1
        clock.now += 0.2
        assert flow.copied_wallet_index is None
        assert flow.state == PurchaseState.PAYMENT_CHOSEN

    def test_copy_unknown_wallet(self, make_flow):
        flow = make_flow()
        flow.choose(PaymentPath.CRYPTO)
        with pytest.raises(NotFoundError):
            flow.copy_wallet(5)

    def test_copy_requires_crypto_path(self, make_flow):
        flow = make_flow()
        flow.choose(PaymentPath.MANUAL_CONTACT)
        with pytest.raises(InvalidTransitionError):
            flow.copy_wallet(0)

    def test_reported_payment_completes(self, make_flow):
        flow = make_flow()
        flow.choose(PaymentPath.MANUAL_CONTACT)
        assert flow.report_manual_payment() == PurchaseState.PURCHASED

    def test_report_requires_chosen_path(self, make_flow):
        with pytest.raises(InvalidTransitionError):
            make_flow().report_manual_payment()

    def test_missing_product_link_shows_notice(self, make_flow):
        flow = make_flow(video=Video(id="vid2", title="Raw", price=2))
        flow.choose(PaymentPath.CRYPTO)
        flow.report_manual_payment()

        artifact = flow.reveal_access()

        assert artifact.product_link is None
        assert artifact.notice == MANUAL_ACCESS_NOTICE
        assert artifact.contact_url == "https://t.me/clipshop_support"


class TestMarkersAndReceipt:
    def test_marker_is_read_once(self, make_flow, markers):
        flow = make_flow()
        flow.choose(PaymentPath.MANUAL_CONTACT)
        flow.report_manual_payment()

        assert markers.consume("session-1", "vid1") is True
        assert markers.consume("session-1", "vid1") is False

    def test_receipt_after_reveal(self, make_flow):
        flow = make_flow()
        flow.choose(PaymentPath.MANUAL_CONTACT)
        flow.report_manual_payment()
        with pytest.raises(InvalidTransitionError):
            flow.receipt()

        flow.reveal_access()
        receipt = flow.receipt()

        assert receipt.brand == "ClipShop"
        assert receipt.price == 9.99
        assert isinstance(receipt.purchase_date, date)


class TestRegistry:
    def test_reuses_live_flow_and_replaces_closed_one(self, make_flow, video):
        registry = PurchaseFlowRegistry(lambda v, s: make_flow(video=v))

        first = registry.get_or_create("session-1", video)
        assert registry.get_or_create("session-1", video) is first

        assert registry.close("session-1", video.id) is True
        assert first.closed
        assert registry.get_or_create("session-1", video) is not first
        assert registry.close("session-x", video.id) is False

    def test_live_flow_sees_video_edits(self, make_flow):
        registry = PurchaseFlowRegistry(lambda v, s: make_flow(video=v))
        flow = registry.get_or_create("session-1", Video(id="vid1", title="Draft", price=5))
        flow.choose(PaymentPath.MANUAL_CONTACT)

        edited = Video(id="vid1", title="Draft", price=50, product_link="https://x/y")
        assert registry.get_or_create("session-1", edited) is flow
        flow.report_manual_payment()

        assert flow.reveal_access().product_link == "https://x/y"
        assert flow.receipt().price == 50

    def test_pending_flow_keeps_charged_amount(self, make_flow, video):
        registry = PurchaseFlowRegistry(lambda v, s: make_flow(video=v))
        flow = registry.get_or_create("session-1", video)
        flow.choose(PaymentPath.CARD)
        flow.start_card_checkout("https://s", "https://c")

        registry.get_or_create("session-1", video.model_copy(update={"price": 99}))

        assert flow.video.price == 9.99

    def test_idle_flows_are_dropped(self, make_flow, video, clock):
        registry = PurchaseFlowRegistry(lambda v, s: make_flow(video=v), idle_seconds=60, clock=clock)
        stale = registry.get_or_create("session-1", video)

        clock.now += 61
        registry.get_or_create("session-2", video)
        assert stale.closed
        assert len(registry) == 1

        assert registry.get_or_create("session-1", video) is not stale

    def test_size_is_bounded(self, make_flow, video):
        registry = PurchaseFlowRegistry(lambda v, s: make_flow(video=v), max_flows=100)

        for i in range(10000):
            registry.get_or_create(f"session-{i}", video)

        assert len(registry) == 100

    def test_recently_used_flow_survives_the_bound(self, make_flow, video):
        registry = PurchaseFlowRegistry(lambda v, s: make_flow(video=v), max_flows=2)
        kept = registry.get_or_create("a", video)
        registry.get_or_create("b", video)
        registry.get_or_create("a", video)

        registry.get_or_create("c", video)

        assert registry.get_or_create("a", video) is kept
        assert len(registry) == 2


class TestMarkerExpiry:
    def test_unread_marker_expires(self, clock):
        markers = PurchaseMarkerStore(ttl=60, clock=clock)
        markers.mark("session-1", "vid1")

        clock.now += 61

        assert markers.consume("session-1", "vid1") is False
        assert len(markers) == 0

    def test_size_is_bounded(self, clock):
        markers = PurchaseMarkerStore(max_marks=10, clock=clock)

        for i in range(1000):
            markers.mark(f"session-{i}", "vid1")

        assert len(markers) == 10
        assert markers.consume("session-999", "vid1") is True
        assert markers.consume("session-0", "vid1") is False
