import uuid

import anyio
import pytest
from sqlalchemy import select, update

from conftest import STARTING_BALANCE, FixedCreditProvider
from glasswallet.domain.credit import service as credit_service
from glasswallet.domain.credit.db_models import CreditTransaction
from glasswallet.domain.credit.providers import CreditApplicant, CreditProviderError, MockCreditProvider
from glasswallet.domain.errors import BusinessLogicError, InsufficientCreditsError
from glasswallet.domain.leads.db_models import Lead
from glasswallet.domain.leads.service import create_lead
from glasswallet.domain.users.db_models import User
from glasswallet.settings import settings
from glasswallet.shared.timeutils import utcnow


async def _make_lead(session, user_id, *, consent=True, email="pull@example.com"):
    return await create_lead(
        session,
        user_id,
        first_name="Priya",
        last_name="Shah",
        email=email,
        zip_code="30301",
        consent_given=consent,
    )


def test_pull_debits_balance_and_writes_ledger_row(async_session_maker, user_id):
    provider = FixedCreditProvider(credit_score=742, income_estimate=6_400_000)

    async def _run():
        async with async_session_maker() as session:
            lead = await _make_lead(session, user_id)
            pull = await credit_service.pull_credit_for_lead(session, user_id, lead.lead_id, provider)
            await session.commit()
            balance = await session.scalar(select(User.credit_balance).where(User.user_id == user_id))
            return pull, balance

    pull, balance = anyio.run(_run)

    assert pull.lead.credit_score == 742
    assert pull.lead.income_estimate == 6_400_000
    assert pull.lead.processed_at is not None
    assert pull.score_tier == "good"
    transaction = pull.transaction
    assert transaction.transaction_type == "pull"
    assert transaction.cost_in_cents == settings.credit_pull_cost_cents
    assert transaction.credit_balance_before == STARTING_BALANCE
    assert transaction.credit_balance_after == STARTING_BALANCE - settings.credit_pull_cost_cents
    assert transaction.credit_balance_before - transaction.credit_balance_after == transaction.cost_in_cents
    assert balance == transaction.credit_balance_after
    assert transaction.external_transaction_id.startswith("FIXED_")


def test_pull_without_consent_is_rejected_before_provider_call(async_session_maker, user_id):
    provider = FixedCreditProvider()

    async def _run():
        async with async_session_maker() as session:
            lead = await _make_lead(session, user_id, consent=False)
            with pytest.raises(BusinessLogicError) as exc_info:
                await credit_service.pull_credit_for_lead(session, user_id, lead.lead_id, provider)
            rows = (await session.execute(select(CreditTransaction))).scalars().all()
            return exc_info.value, rows

    error, rows = anyio.run(_run)

    assert error.code == "CONSENT_REQUIRED"
    assert error.status_code == 400
    assert provider.calls == 0
    assert rows == []


def test_repeat_pull_inside_window_is_rejected(async_session_maker, user_id):
    provider = FixedCreditProvider()

    async def _run():
        async with async_session_maker() as session:
            lead = await _make_lead(session, user_id)
            await credit_service.pull_credit_for_lead(session, user_id, lead.lead_id, provider)
            with pytest.raises(BusinessLogicError) as exc_info:
                await credit_service.pull_credit_for_lead(session, user_id, lead.lead_id, provider)
            return exc_info.value

    error = anyio.run(_run)

    assert error.code == "CREDIT_PULL_TOO_RECENT"
    assert error.details["hoursRemaining"] == settings.credit_pull_window_hours
    assert provider.calls == 1


def test_insufficient_balance_reports_required_and_available(async_session_maker, user_id):
    provider = FixedCreditProvider()
    settings.credit_pull_cost_cents = STARTING_BALANCE + 1

    async def _run():
        async with async_session_maker() as session:
            lead = await _make_lead(session, user_id)
            with pytest.raises(InsufficientCreditsError) as exc_info:
                await credit_service.pull_credit_for_lead(session, user_id, lead.lead_id, provider)
            return exc_info.value

    error = anyio.run(_run)

    assert error.status_code == 402
    assert error.details == {"required": STARTING_BALANCE + 1, "available": STARTING_BALANCE}
    assert provider.calls == 0


def test_retryable_provider_failure_leaves_balance_untouched(async_session_maker, user_id):
    provider = MockCreditProvider(
        fail_with=CreditProviderError("PROVIDER_TIMEOUT", "Credit bureau timed out", retryable=True)
    )

    async def _run():
        async with async_session_maker() as session:
            lead = await _make_lead(session, user_id)
            with pytest.raises(BusinessLogicError) as exc_info:
                await credit_service.pull_credit_for_lead(session, user_id, lead.lead_id, provider)
            balance = await credit_service.get_balance(session, user_id)
            return exc_info.value, balance, lead.credit_score

    error, balance, score = anyio.run(_run)

    assert error.code == "PROVIDER_TIMEOUT"
    assert error.retryable is True
    assert error.status_code == 503
    assert balance == STARTING_BALANCE
    assert score is None


def test_pull_window_claimed_by_another_request_is_rejected(async_session_maker, user_id):
    provider = FixedCreditProvider()

    async def _run():
        async with async_session_maker() as session:
            lead = await _make_lead(session, user_id)
            await session.commit()
            # a concurrent request stamps the row after this session loaded the lead
            await session.execute(
                update(Lead)
                .where(Lead.lead_id == lead.lead_id)
                .values(processed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            assert lead.processed_at is None
            with pytest.raises(BusinessLogicError) as exc_info:
                await credit_service.pull_credit_for_lead(session, user_id, lead.lead_id, provider)
            balance = await credit_service.get_balance(session, user_id)
            rows = (await session.execute(select(CreditTransaction))).scalars().all()
            return exc_info.value, balance, rows

    error, balance, rows = anyio.run(_run)

    assert error.code == "CREDIT_PULL_TOO_RECENT"
    assert error.details["lastPullDate"] is not None
    assert provider.calls == 0
    assert balance == STARTING_BALANCE
    assert rows == []


def test_failed_pull_releases_the_window(async_session_maker, user_id):
    failing = FixedCreditProvider(
        fail_with=CreditProviderError("PROVIDER_TIMEOUT", "Credit bureau timed out", retryable=True)
    )
    working = FixedCreditProvider()

    async def _run():
        async with async_session_maker() as session:
            lead = await _make_lead(session, user_id)
            with pytest.raises(BusinessLogicError):
                await credit_service.pull_credit_for_lead(session, user_id, lead.lead_id, failing)
            stored = await session.scalar(select(Lead.processed_at).where(Lead.lead_id == lead.lead_id))
            pull = await credit_service.pull_credit_for_lead(session, user_id, lead.lead_id, working)
            return stored, pull

    stored, pull = anyio.run(_run)

    assert stored is None
    assert working.calls == 1
    assert pull.lead.processed_at is not None


def test_debit_guard_refuses_to_go_negative(async_session_maker, user_id):
    async def _run():
        async with async_session_maker() as session:
            with pytest.raises(InsufficientCreditsError):
                await credit_service.debit(session, user_id, STARTING_BALANCE + 5)
            ok = await credit_service.debit(session, user_id, STARTING_BALANCE)
            return ok

    transaction = anyio.run(_run)

    assert transaction.credit_balance_after == 0


def test_purchase_and_refund_add_to_balance(async_session_maker, user_id):
    async def _run():
        async with async_session_maker() as session:
            purchase = await credit_service.record_purchase(session, user_id, 2_000, external_transaction_id="pi_1")
            refund = await credit_service.record_refund(session, user_id, 495)
            await session.commit()
            return purchase, refund

    purchase, refund = anyio.run(_run)

    assert purchase.transaction_type == "purchase"
    assert purchase.credit_balance_after == STARTING_BALANCE + 2_000
    assert refund.transaction_type == "refund"
    assert refund.credit_balance_before == purchase.credit_balance_after
    assert refund.credit_balance_after == STARTING_BALANCE + 2_495


def test_mock_provider_is_deterministic_per_applicant():
    provider = MockCreditProvider()
    applicant = CreditApplicant(first_name="Ana", last_name="Lopez", email="Ana@Example.com")

    async def _run():
        first = await provider.pull(applicant, transaction_id=str(uuid.uuid4()))
        second = await provider.pull(applicant, transaction_id=str(uuid.uuid4()))
        return first, second

    first, second = anyio.run(_run)

    assert 300 <= first.credit_score <= 850
    assert first.credit_score == second.credit_score
    assert first.income_estimate == second.income_estimate
    assert first.report_id != second.report_id
