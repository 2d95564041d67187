import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from models.rental import RentalStatus
from models.transaction import TransactionKind
from services.ledger_service import Ledger
from services.provider_gateway import ActivationState, ActivationStatus
from services.rental_service import RentalService
from services.schemas import RentalFilters, TransactionFilters
from utils.exceptions import (
    ConcurrencyConflict,
    InsufficientCredits,
    InvalidState,
    NotFound,
    ProviderRejected,
    ProviderUnavailable,
    RentalPersistenceError,
)
from utils.logger import app_logger
from utils.time_utils import ensure_utc


async def test_end_to_end_until_credits_run_out(rental_service, ledger, gateway, account, whatsapp):
    first = await rental_service.create_rental(account.id, "wa")
    assert await ledger.balance(account.id) == Decimal("0.5000")

    second = await rental_service.create_rental(account.id, "wa")
    assert await ledger.balance(account.id) == Decimal("0.0000")

    with pytest.raises(InsufficientCredits):
        await rental_service.create_rental(account.id, "wa")

    assert await ledger.balance(account.id) == Decimal("0.0000")
    assert first.status is RentalStatus.ACTIVE and second.status is RentalStatus.ACTIVE
    # The third attempt never reached the provider.
    assert gateway.count("request_number") == 2
    assert (await ledger.reconcile(account.id)).is_consistent


async def test_new_rental_is_charged_and_has_deadline(rental_service, ledger, clock, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")

    assert rental.cost == Decimal("0.50")
    assert rental.service_code == "wa"
    assert rental.deadline_at == clock.now + rental_service.window
    debits = await ledger.history(account.id, TransactionFilters(kinds=[TransactionKind.RENTAL_DEBIT]))
    assert debits.total == 1
    assert debits.items[0].details["rental_id"] == rental.id
    assert debits.items[0].details["activation_id"] == rental.activation_id


async def test_provider_rejection_leaves_no_trace(rental_service, ledger, gateway, account, whatsapp):
    gateway.fail_next("request_number", ProviderRejected("NO_NUMBERS", "no numbers available"))

    with pytest.raises(ProviderRejected) as exc_info:
        await rental_service.create_rental(account.id, "wa")

    assert exc_info.value.reason == "NO_NUMBERS"
    assert await ledger.balance(account.id) == Decimal("1.0000")
    assert (await ledger.history(account.id)).total == 1
    assert (await rental_service.list_rentals(account.id)).total == 0


async def test_transient_provider_failures_are_retried(rental_service, gateway, account, whatsapp):
    gateway.fail_next("request_number", ProviderUnavailable(), ProviderUnavailable())

    rental = await rental_service.create_rental(account.id, "wa")

    assert rental.status is RentalStatus.ACTIVE
    assert gateway.count("request_number") == 3


async def test_unknown_or_inactive_service(rental_service, catalog, gateway, account, whatsapp):
    with pytest.raises(NotFound):
        await rental_service.create_rental(account.id, "tg")

    await catalog.upsert("wa", "WhatsApp", Decimal("0.50"), is_active=False)
    with pytest.raises(NotFound):
        await rental_service.create_rental(account.id, "wa")
    assert gateway.count("request_number") == 0


async def test_disabled_account_cannot_rent(rental_service, ledger, account, whatsapp):
    await ledger.set_account_active(account.id, False)

    with pytest.raises(InvalidState):
        await rental_service.create_rental(account.id, "wa")


async def test_code_received_completes_rental(rental_service, gateway, clock, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")
    clock.advance(30)

    completed = await rental_service.handle_code_received(rental.activation_id, "123456")

    assert completed.status is RentalStatus.COMPLETED
    assert completed.code == "123456"
    assert completed.last_code_received_at == clock.now
    assert gateway.count("confirm_completion") == 1


async def test_code_received_twice_is_a_no_op(rental_service, ledger, clock, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")
    first = await rental_service.handle_code_received(rental.activation_id, "123456")
    stamped_at = first.last_code_received_at
    clock.advance(5)

    second = await rental_service.handle_code_received(rental.activation_id, "123456")

    assert second.status is RentalStatus.COMPLETED
    assert ensure_utc(second.last_code_received_at) == stamped_at
    assert await ledger.balance(account.id) == Decimal("0.5000")


async def test_code_for_unknown_activation(rental_service):
    with pytest.raises(NotFound):
        await rental_service.handle_code_received("nope", "1234")


async def test_cancel_refunds_unused_rental(rental_service, ledger, gateway, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")

    cancelled = await rental_service.cancel_rental(account.id, rental.id)

    assert cancelled.status is RentalStatus.CANCELLED
    assert cancelled.end_reason == "cancelled by user"
    assert gateway.count("cancel") == 1
    assert await ledger.balance(account.id) == Decimal("1.0000")
    assert (await ledger.reconcile(account.id)).is_consistent


async def test_cancel_without_refund_policy(session_factory, catalog, gateway, clock, whatsapp):
    ledger = Ledger(session_factory)
    service = RentalService(
        session_factory, ledger, catalog, gateway, provider_retry_delay=0, refund_unused=False, clock=clock
    )
    account = await ledger.open_account("dave", initial_credit=1)
    rental = await service.create_rental(account.id, "wa")

    await service.cancel_rental(account.id, rental.id)

    assert await ledger.balance(account.id) == Decimal("0.5000")


async def test_cancel_twice_is_rejected(rental_service, ledger, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")
    await rental_service.cancel_rental(account.id, rental.id)

    with pytest.raises(InvalidState):
        await rental_service.cancel_rental(account.id, rental.id)
    assert await ledger.balance(account.id) == Decimal("1.0000")


async def test_cancel_keeps_rental_active_when_provider_is_down(rental_service, ledger, gateway, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")
    gateway.fail_next("cancel", *[ProviderUnavailable() for _ in range(3)])

    with pytest.raises(ProviderUnavailable):
        await rental_service.cancel_rental(account.id, rental.id)

    current = await rental_service.get_rental_status(account.id, rental.id)
    assert current.status is RentalStatus.ACTIVE
    assert await ledger.balance(account.id) == Decimal("0.5000")


async def test_other_accounts_cannot_touch_a_rental(rental_service, ledger, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")
    stranger = await ledger.open_account("mallory", initial_credit=1)

    with pytest.raises(NotFound):
        await rental_service.cancel_rental(stranger.id, rental.id)
    with pytest.raises(NotFound):
        await rental_service.get_rental_status(stranger.id, rental.id)


async def test_reactivate_charges_again_and_extends_deadline(rental_service, ledger, gateway, clock, whatsapp):
    account = await ledger.open_account("erin", initial_credit=2)
    rental = await rental_service.create_rental(account.id, "wa")
    clock.advance(100)

    reactivated = await rental_service.reactivate_rental(account.id, rental.id)

    assert reactivated.reactivation_count == 1
    assert reactivated.deadline_at == clock.now + rental_service.window
    assert gateway.count("request_additional_code") == 1
    assert await ledger.balance(account.id) == Decimal("1.0000")
    assert len(reactivated.details["debit_transaction_ids"]) == 2

    # Both charges come back if the rental is then cancelled.
    await rental_service.cancel_rental(account.id, rental.id)
    assert await ledger.balance(account.id) == Decimal("2.0000")


async def test_reactivate_after_cancel_is_rejected(rental_service, ledger, gateway, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")
    await rental_service.cancel_rental(account.id, rental.id)

    with pytest.raises(InvalidState):
        await rental_service.reactivate_rental(account.id, rental.id)

    assert gateway.count("request_additional_code") == 0
    debits = await ledger.history(account.id, TransactionFilters(kinds=[TransactionKind.RENTAL_DEBIT]))
    assert debits.total == 1


async def test_reactivate_without_credits(rental_service, ledger, gateway, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")
    await ledger.debit(account.id, "0.50")

    with pytest.raises(InsufficientCredits):
        await rental_service.reactivate_rental(account.id, rental.id)
    assert gateway.count("request_additional_code") == 0


async def test_stale_snapshot_is_a_conflict(rental_service, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")
    snapshot = await rental_service._load(rental.id)
    await rental_service.handle_code_received(rental.activation_id, "4321")

    with pytest.raises(ConcurrencyConflict):
        await rental_service._close(snapshot, RentalStatus.CANCELLED, "test", rental_service.clock())


async def test_status_query_picks_up_code_from_provider(rental_service, gateway, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")
    gateway.deliver_code(rental.activation_id, "998877")

    current = await rental_service.get_rental_status(account.id, rental.id)

    assert current.status is RentalStatus.COMPLETED
    assert current.code == "998877"


async def test_status_query_survives_provider_outage(rental_service, gateway, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")
    gateway.fail_next("poll_status", ProviderUnavailable())

    current = await rental_service.get_rental_status(account.id, rental.id)

    assert current.status is RentalStatus.ACTIVE


async def test_provider_cancellation_refunds(rental_service, ledger, gateway, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")

    cancelled = await rental_service.handle_provider_update(
        rental.activation_id, ActivationStatus(ActivationState.CANCELLED)
    )

    assert cancelled.status is RentalStatus.CANCELLED
    assert cancelled.end_reason == "cancelled by provider"
    # Nothing to tell the provider about its own cancellation.
    assert gateway.count("cancel") == 0
    assert await ledger.balance(account.id) == Decimal("1.0000")


async def test_waiting_status_changes_nothing(rental_service, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")

    result = await rental_service.handle_provider_update(
        rental.activation_id, ActivationStatus(ActivationState.AWAITING_CODE)
    )

    assert result is None


async def test_list_rentals_filters(rental_service, ledger, catalog, clock, whatsapp):
    await catalog.upsert("tg", "Telegram", Decimal("0.25"))
    account = await ledger.open_account("frank", initial_credit=5)
    wa = await rental_service.create_rental(account.id, "wa")
    clock.advance(1)
    await rental_service.create_rental(account.id, "tg")
    clock.advance(1)
    await rental_service.create_rental(account.id, "tg")
    await rental_service.cancel_rental(account.id, wa.id)

    everything = await rental_service.list_rentals(account.id)
    telegram = await rental_service.list_rentals(account.id, RentalFilters(service_code="tg"))
    cancelled = await rental_service.list_rentals(account.id, RentalFilters(status=RentalStatus.CANCELLED))

    assert everything.total == 3
    assert everything.items[0].service_code == "tg"
    assert telegram.total == 2
    assert [r.id for r in cancelled.items] == [wa.id]


async def test_unsaved_rental_is_released_and_not_charged(rental_service, ledger, gateway, monkeypatch, account, whatsapp):
    attempts = []

    async def failing_insert(*args, **kwargs):
        attempts.append(args)
        raise OperationalError("INSERT INTO rentals", {}, Exception("database is locked"))

    monkeypatch.setattr(rental_service, "_insert_rental", failing_insert)

    with pytest.raises(RentalPersistenceError):
        await rental_service.create_rental(account.id, "wa")

    assert len(attempts) == rental_service.persist_attempts
    assert gateway.count("cancel") == 1
    assert await ledger.balance(account.id) == Decimal("1.0000")
    assert (await rental_service.list_rentals(account.id)).total == 0


async def test_concurrent_creates_on_one_rental_worth_of_credits(rental_service, ledger, gateway, monkeypatch, whatsapp):
    account = await ledger.open_account("olga", initial_credit="0.50")
    granted_calls = []
    both_granted = asyncio.Event()
    request_number = gateway.request_number

    # Hold both requests at the provider so both pass the balance pre-check.
    async def request_number_together(*args):
        granted_calls.append(args)
        if len(granted_calls) == 2:
            both_granted.set()
        await both_granted.wait()
        return await request_number(*args)

    monkeypatch.setattr(gateway, "request_number", request_number_together)

    results = await asyncio.gather(
        rental_service.create_rental(account.id, "wa"),
        rental_service.create_rental(account.id, "wa"),
        return_exceptions=True,
    )

    rentals = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(rentals) == 1 and len(failures) == 1
    assert isinstance(failures[0], InsufficientCredits)
    released = [call[1] for call in gateway.calls if call[0] == "cancel"]
    assert len(released) == 1
    assert released[0] != rentals[0].activation_id
    assert await ledger.balance(account.id) == Decimal("0.0000")
    assert (await ledger.reconcile(account.id)).is_consistent
    assert (await rental_service.list_rentals(account.id)).total == 1


async def test_uncharged_reactivation_is_logged_for_reconciliation(rental_service, ledger, gateway, monkeypatch, account, whatsapp):
    rental = await rental_service.create_rental(account.id, "wa")
    request_additional_code = gateway.request_additional_code

    # The remaining credits are spent while the provider answers.
    async def request_and_spend(activation_id):
        await request_additional_code(activation_id)
        await ledger.debit(account.id, "0.50")

    monkeypatch.setattr(gateway, "request_additional_code", request_and_spend)
    messages = []
    sink_id = app_logger.add(messages.append, level="WARNING")
    try:
        with pytest.raises(InsufficientCredits):
            await rental_service.reactivate_rental(account.id, rental.id)
    finally:
        app_logger.remove(sink_id)

    assert any("RECONCILE" in m and rental.activation_id in m for m in messages)
    assert (await rental_service._load(rental.id)).reactivation_count == 0


async def test_usage_stats_by_day_and_month(rental_service, ledger, clock, whatsapp):
    account = await ledger.open_account("pia", initial_credit=2)
    delivered = await rental_service.create_rental(account.id, "wa")
    await rental_service.handle_code_received(delivered.activation_id, "1111")
    clock.advance(2 * 24 * 3600)
    cancelled = await rental_service.create_rental(account.id, "wa")
    await rental_service.cancel_rental(account.id, cancelled.id)
    await rental_service.create_rental(account.id, "wa")

    daily = await rental_service.usage_stats(account.id, "daily", days=30)
    last_day = await rental_service.usage_stats(account.id, "daily", days=1)
    monthly = await rental_service.usage_stats(account.id, "monthly")

    assert [(b.period, b.total, b.delivered, b.failed) for b in daily] == [
        ("2024-01-01", 1, 1, 0),
        ("2024-01-03", 2, 0, 1),
    ]
    assert [b.period for b in last_day] == ["2024-01-03"]
    assert [(b.period, b.total, b.delivered, b.failed) for b in monthly] == [("2024-01", 3, 1, 1)]


async def test_usage_stats_rejects_unknown_period(rental_service, account):
    with pytest.raises(ValueError):
        await rental_service.usage_stats(account.id, "weekly")
