"""Tests for the Fiskaly KassenSichV client."""

import json
from datetime import date, datetime, timezone

import httpx
import pytest

from chalk_pos.services.tse.errors import (
    AdminAuthFailed,
    ClientRegistrationFailed,
    ExportFailed,
    InitializationTimeout,
    NotConfigured,
    TransactionCancelFailed,
    TransactionFinishFailed,
    TransactionStartFailed,
    TseError,
    TssStateTransitionFailed,
)
from chalk_pos.services.tse.fiskaly_client import (
    FiskalyClient,
    PaymentType,
    SaleItem,
    TssState,
    calculate_vat_amounts,
)

from conftest import CLIENT_ID, TSS_ID


def last_body(fake, route_suffix=""):
    request = [r for r in fake.requests if r.url.path.endswith(route_suffix) and r.content][-1]
    return json.loads(request.content)


# ============================================================================
# VAT breakdown
# ============================================================================


class TestCalculateVatAmounts:
    """Tests for calculate_vat_amounts."""

    def test_single_rate(self):
        items = [{"name": "Coffee", "price": 3.00, "quantity": 2, "vat_rate": 19}]

        assert calculate_vat_amounts(items) == [{"vat_rate": "0.1900", "amount": "6.00"}]

    def test_groups_by_rate_in_first_seen_order(self):
        items = [
            SaleItem(name="Beer", price=4.5, quantity=2, vat_rate=19),
            SaleItem(name="Pretzel", price=2.2, quantity=3, vat_rate=7),
            SaleItem(name="Chalk", price=1.0, quantity=1, vat_rate=19),
        ]

        assert calculate_vat_amounts(items) == [
            {"vat_rate": "0.1900", "amount": "10.00"},
            {"vat_rate": "0.0700", "amount": "6.60"},
        ]

    def test_missing_rate_defaults_to_19(self):
        items = [
            {"name": "Day pass", "price": 12.0},
            {"name": "Shoes", "price": 4.0, "quantity": 1, "vat_rate": 19},
        ]

        assert calculate_vat_amounts(items) == [{"vat_rate": "0.1900", "amount": "16.00"}]

    def test_zero_rate_is_kept(self):
        items = [{"name": "Voucher", "price": 25.0, "quantity": 1, "vat_rate": 0}]

        assert calculate_vat_amounts(items) == [{"vat_rate": "0.0000", "amount": "25.00"}]

    def test_amounts_rounded_half_up(self):
        items = [{"name": "Tea", "price": 0.335, "quantity": 3, "vat_rate": 7}]

        # 0.335 * 3 = 1.005
        assert calculate_vat_amounts(items) == [{"vat_rate": "0.0700", "amount": "1.01"}]

    def test_fractional_rate(self):
        items = [{"name": "Snack", "price": 10, "quantity": 1, "vat_rate": 5.5}]

        assert calculate_vat_amounts(items)[0]["vat_rate"] == "0.0550"

    def test_empty(self):
        assert calculate_vat_amounts([]) == []


class TestPaymentType:
    def test_cash_and_card(self):
        assert PaymentType.from_method("cash") == PaymentType.CASH
        assert PaymentType.from_method("card") == PaymentType.CARD


# ============================================================================
# TSS state machine
# ============================================================================


class TestTssLifecycle:
    """Tests for TSS state transitions."""

    @pytest.mark.asyncio
    async def test_initialize_moves_created_to_uninitialized(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.tss_state = "CREATED"
        async with client_factory(fiskaly_config) as client:
            state = await client.initialize_tss()
            remote = await client.get_tss_state()

        assert state == TssState.UNINITIALIZED
        assert remote == TssState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_initialize_is_noop_when_not_created(self, client_factory, fiskaly_config, fake_fiskaly):
        async with client_factory(fiskaly_config) as client:
            state = await client.initialize_tss()
            await client.initialize_tss()

        assert state == TssState.INITIALIZED
        assert fake_fiskaly.count("patch_tss") == 0

    @pytest.mark.asyncio
    async def test_provision_walks_to_initialized(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.tss_state = "CREATED"
        fake_fiskaly.initializing_polls = 2
        steps = []

        async with client_factory(fiskaly_config) as client:
            state = await client.provision_tss(on_step=steps.append)

        assert state == TssState.INITIALIZED
        assert fake_fiskaly.tss_state == "INITIALIZED"
        assert fake_fiskaly.count("admin_auth") == 1
        assert fake_fiskaly.count("patch_tss") == 2
        assert steps[0] == "TSS state: CREATED"
        assert steps[-1] == "TSS initialized"

    @pytest.mark.asyncio
    async def test_provision_times_out(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.tss_state = "UNINITIALIZED"
        fake_fiskaly.initializing_polls = 100

        async with client_factory(fiskaly_config) as client:
            with pytest.raises(InitializationTimeout) as exc_info:
                await client.provision_tss(attempts=3, interval=0)

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_state == "INITIALIZING"
        # state untouched, polling again later is safe
        assert fake_fiskaly.tss_state == "INITIALIZING"

    @pytest.mark.asyncio
    async def test_provision_retry_after_timeout(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.tss_state = "UNINITIALIZED"
        fake_fiskaly.initializing_polls = 4

        async with client_factory(fiskaly_config) as client:
            with pytest.raises(InitializationTimeout):
                await client.provision_tss(attempts=2, interval=0)
            state = await client.provision_tss(attempts=5, interval=0)

        assert state == TssState.INITIALIZED
        assert fake_fiskaly.count("admin_auth") == 1

    @pytest.mark.asyncio
    async def test_provision_refuses_disabled_tss(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.tss_state = "DISABLED"

        async with client_factory(fiskaly_config) as client:
            with pytest.raises(TssStateTransitionFailed):
                await client.provision_tss()

    @pytest.mark.asyncio
    async def test_wrong_admin_pin(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.tss_state = "UNINITIALIZED"
        fiskaly_config.admin_pin = "0000"

        async with client_factory(fiskaly_config) as client:
            with pytest.raises(AdminAuthFailed) as exc_info:
                await client.provision_tss()

        assert exc_info.value.status_code == 401
        assert "wrong admin PIN" in str(exc_info.value)
        assert fake_fiskaly.tss_state == "UNINITIALIZED"

    @pytest.mark.asyncio
    async def test_admin_auth_without_pin(self, client_factory, fiskaly_config, fake_fiskaly):
        fiskaly_config.admin_pin = None

        async with client_factory(fiskaly_config) as client:
            with pytest.raises(NotConfigured):
                await client.authenticate_admin()

        assert fake_fiskaly.count("admin_auth") == 0

    @pytest.mark.asyncio
    async def test_patch_failure(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.tss_state = "CREATED"
        fake_fiskaly.fail["patch_tss"] = 409

        async with client_factory(fiskaly_config) as client:
            with pytest.raises(TssStateTransitionFailed) as exc_info:
                await client.initialize_tss()

        assert exc_info.value.status_code == 409
        assert "patch_tss refused" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_disable(self, client_factory, fiskaly_config, fake_fiskaly):
        async with client_factory(fiskaly_config) as client:
            state = await client.disable_tss()

        assert state == TssState.DISABLED
        assert fake_fiskaly.routes[-2:] == ["admin_auth", "patch_tss"]


# ============================================================================
# Client registration
# ============================================================================


class TestClientRegistration:
    """Tests for ensure_client_registered."""

    @pytest.mark.asyncio
    async def test_registration_is_idempotent(self, client_factory, fiskaly_config, fake_fiskaly):
        async with client_factory(fiskaly_config) as client:
            first = await client.ensure_client_registered()
            second = await client.ensure_client_registered()
            registered = await client.is_client_registered()

        assert first is None and second is None
        assert registered is True
        assert fake_fiskaly.count("put_client") == 2
        assert last_body(fake_fiskaly, f"/client/{CLIENT_ID}") == {"serial_number": CLIENT_ID}

    @pytest.mark.asyncio
    async def test_registration_failure(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.fail["put_client"] = 500

        async with client_factory(fiskaly_config) as client:
            with pytest.raises(ClientRegistrationFailed) as exc_info:
                await client.ensure_client_registered()

        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_unregistered_client(self, client_factory, fiskaly_config, fake_fiskaly):
        async with client_factory(fiskaly_config) as client:
            assert await client.is_client_registered() is False


# ============================================================================
# Transactions
# ============================================================================


class TestTransactions:
    """Tests for start / finish / cancel."""

    @pytest.mark.asyncio
    async def test_successful_sale(self, client_factory, fiskaly_config, fake_fiskaly):
        items = [{"name": "Coffee", "price": 3.00, "quantity": 2, "vat_rate": 19}]

        async with client_factory(fiskaly_config) as client:
            await client.start_transaction("sale-1")
            signature = await client.finish_transaction("sale-1", 6.00, "cash", items)

        receipt = fake_fiskaly.transactions["sale-1"]["schema"]["standard_v1"]["receipt"]
        assert receipt["receipt_type"] == "RECEIPT"
        assert receipt["amounts_per_vat_rate"] == [{"vat_rate": "0.1900", "amount": "6.00"}]
        assert receipt["amounts_per_payment_type"] == [{"payment_type": "CASH", "amount": "6.00"}]
        assert fake_fiskaly.transactions["sale-1"]["revisions"] == ["1", "2"]

        assert signature.transaction_number == 1
        assert signature.signature_value == "sig-1"
        assert signature.signature_algorithm == "ecdsa-plain-SHA384"
        assert signature.signature_counter == 101
        assert signature.time_start == 1760000000
        assert signature.time_end == 1760000005
        assert signature.qr_code_data.startswith("V0;")
        assert signature.tss_id == TSS_ID
        assert signature.client_id == CLIENT_ID

    @pytest.mark.asyncio
    async def test_start_payload(self, client_factory, fiskaly_config, fake_fiskaly):
        async with client_factory(fiskaly_config) as client:
            await client.start_transaction("sale-2")

        assert last_body(fake_fiskaly, "/tx/sale-2") == {"state": "ACTIVE", "client_id": CLIENT_ID}

    @pytest.mark.asyncio
    async def test_card_payment(self, client_factory, fiskaly_config, fake_fiskaly):
        async with client_factory(fiskaly_config) as client:
            await client.start_transaction("sale-3")
            await client.finish_transaction("sale-3", 12.5, "card", [SaleItem("Rental", 12.5)])

        receipt = fake_fiskaly.transactions["sale-3"]["schema"]["standard_v1"]["receipt"]
        assert receipt["amounts_per_payment_type"] == [{"payment_type": "CARD", "amount": "12.50"}]

    @pytest.mark.asyncio
    async def test_start_failure(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.fail["tx_start"] = 400

        async with client_factory(fiskaly_config) as client:
            with pytest.raises(TransactionStartFailed) as exc_info:
                await client.start_transaction("sale-4")

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail == {"code": "E_FAKE", "message": "tx_start refused"}

    @pytest.mark.asyncio
    async def test_finish_failure(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.fail["tx_finish"] = 500

        async with client_factory(fiskaly_config) as client:
            await client.start_transaction("sale-5")
            with pytest.raises(TransactionFinishFailed):
                await client.finish_transaction("sale-5", 1.0, "cash", [SaleItem("x", 1.0)])

    @pytest.mark.asyncio
    async def test_missing_time_end_falls_back_to_now(self, fiskaly_config, monkeypatch):
        def handler(request):
            if request.url.path.endswith("/auth"):
                return httpx.Response(200, json={"access_token": "t"})
            return httpx.Response(200, json={
                "number": 7,
                "time_start": 1760000000,
                "signature": {"value": "s", "counter": 9},
            })

        monkeypatch.setattr("chalk_pos.services.tse.fiskaly_client.time.time", lambda: 1760000042.7)
        async with FiskalyClient(fiskaly_config, transport=httpx.MockTransport(handler)) as client:
            signature = await client.finish_transaction("sale-6", 1.0, "cash", [])

        assert signature.time_end == 1760000042
        assert signature.qr_code_data is None
        assert signature.signature_algorithm is None

    @pytest.mark.asyncio
    async def test_malformed_signature(self, fiskaly_config):
        def handler(request):
            if request.url.path.endswith("/auth"):
                return httpx.Response(200, json={"access_token": "t"})
            return httpx.Response(200, json={"number": 7, "time_start": 1})

        async with FiskalyClient(fiskaly_config, transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(TransactionFinishFailed, match="Malformed signature"):
                await client.finish_transaction("sale-7", 1.0, "cash", [])

    @pytest.mark.asyncio
    async def test_cancel(self, client_factory, fiskaly_config, fake_fiskaly):
        async with client_factory(fiskaly_config) as client:
            await client.start_transaction("sale-8")
            await client.cancel_transaction("sale-8")

        assert fake_fiskaly.transactions["sale-8"]["state"] == "CANCELLED"
        assert fake_fiskaly.transactions["sale-8"]["revisions"] == ["1", None]

    @pytest.mark.asyncio
    async def test_cancel_failure(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.fail["tx_cancel"] = 409

        async with client_factory(fiskaly_config) as client:
            with pytest.raises(TransactionCancelFailed):
                await client.cancel_transaction("sale-9")


# ============================================================================
# Export and health check
# ============================================================================


class TestExportAndHealth:

    @pytest.mark.asyncio
    async def test_export_widens_date_range(self, client_factory, fiskaly_config, fake_fiskaly):
        async with client_factory(fiskaly_config) as client:
            content = await client.export_compliance(date(2026, 1, 1), date(2026, 1, 31))

        assert content == b"fake-tar-archive"
        assert fake_fiskaly.last_export == {
            "start_date": "2026-01-01T00:00:00+00:00",
            "end_date": "2026-01-31T23:59:59.999999+00:00",
        }

    @pytest.mark.asyncio
    async def test_export_keeps_datetimes(self, client_factory, fiskaly_config, fake_fiskaly):
        start = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)
        end = datetime(2026, 1, 1, 18, 0, tzinfo=timezone.utc)
        async with client_factory(fiskaly_config) as client:
            await client.export_compliance(start, end)

        assert fake_fiskaly.last_export["end_date"] == "2026-01-01T18:00:00+00:00"

    @pytest.mark.asyncio
    async def test_export_failure(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.fail["export"] = 500

        async with client_factory(fiskaly_config) as client:
            with pytest.raises(ExportFailed):
                await client.export_compliance(date(2026, 1, 1), date(2026, 1, 2))

    @pytest.mark.asyncio
    async def test_health_check_ok(self, client_factory, fiskaly_config, fake_fiskaly):
        async with client_factory(fiskaly_config) as client:
            assert await client.health_check() is True

        assert fake_fiskaly.routes == ["auth", "get_tss"]

    @pytest.mark.asyncio
    async def test_health_check_never_raises(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.fail["auth"] = 500
        async with client_factory(fiskaly_config) as client:
            assert await client.health_check() is False

    @pytest.mark.asyncio
    async def test_health_check_with_non_object_auth_reply(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.replies["auth"] = "ok"
        async with client_factory(fiskaly_config) as client:
            assert await client.health_check() is False

    @pytest.mark.asyncio
    async def test_tss_reply_that_is_not_an_object(self, client_factory, fiskaly_config, fake_fiskaly):
        fake_fiskaly.replies["get_tss"] = ["INITIALIZED"]
        async with client_factory(fiskaly_config) as client:
            with pytest.raises(TseError, match="expected a JSON object"):
                await client.initialize_tss()

    @pytest.mark.asyncio
    async def test_health_check_does_not_register(self, client_factory, fiskaly_config, fake_fiskaly):
        async with client_factory(fiskaly_config) as client:
            await client.health_check()

        assert fake_fiskaly.count("put_client") == 0

    @pytest.mark.asyncio
    async def test_transport_error_is_wrapped(self, fiskaly_config):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with FiskalyClient(fiskaly_config, transport=httpx.MockTransport(handler)) as client:
            assert await client.health_check() is False

    def test_base_url_per_environment(self, fiskaly_config):
        client = FiskalyClient(fiskaly_config, base_url="https://fiskaly.test/api/v2")

        assert client.base_url == "https://fiskaly.test/api/v2"
        assert FiskalyClient(fiskaly_config).base_url.endswith("/api/v2")
