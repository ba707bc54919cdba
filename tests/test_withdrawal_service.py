"""Withdrawal reservation and on-chain settlement"""

import pytest
from decimal import Decimal

from models import TransactionStatus
from services.blockchain.client import ChainClientError, SubmittedTransfer
from services.withdrawal_service import WithdrawalService, WithdrawalSettlementProcessor
from utils.settlement_errors import InsufficientBalance, InvalidAddress, InvalidAmount, InvalidState

from conftest import RECIPIENT_ADDRESS


@pytest.fixture
def withdrawals(store):
    return WithdrawalService(store, withdrawal_fee=Decimal("0.4"))


@pytest.fixture
def processor(store, chain):
    return WithdrawalSettlementProcessor(store, chain, gas_limit_margin=Decimal("1.2"))


class TestRequestWithdrawal:

    @pytest.mark.asyncio
    async def test_fee_must_be_covered(self, make_account, credit, withdrawals, store):
        account_id = make_account()
        credit(account_id, "50.3")

        with pytest.raises(InsufficientBalance):
            await withdrawals.request_withdrawal(account_id, "50", RECIPIENT_ADDRESS)

        assert store.history_for_account(account_id)[0].kind == "deposit"

    @pytest.mark.asyncio
    async def test_reservation_debits_amount_and_fee(self, make_account, credit, withdrawals, balance_engine):
        account_id = make_account()
        credit(account_id, "50.4")

        record = await withdrawals.request_withdrawal(account_id, "50", RECIPIENT_ADDRESS)

        assert record.status == TransactionStatus.PENDING.value
        assert record.fee == Decimal("0.4")
        assert record.external_address == RECIPIENT_ADDRESS
        assert balance_engine.compute_balance(account_id) == Decimal("0")

    @pytest.mark.asyncio
    async def test_invalid_address(self, make_account, credit, withdrawals):
        account_id = make_account()
        credit(account_id, "100")

        with pytest.raises(InvalidAddress):
            await withdrawals.request_withdrawal(account_id, "1", "0xnothex")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5", "abc"])
    async def test_invalid_amount(self, make_account, withdrawals, amount):
        account_id = make_account()

        with pytest.raises(InvalidAmount):
            await withdrawals.request_withdrawal(account_id, amount, RECIPIENT_ADDRESS)


class TestProcessWithdrawal:

    @pytest.mark.asyncio
    async def test_settles_on_chain(self, make_account, credit, withdrawals, processor, chain, store,
                                    balance_engine):
        account_id = make_account()
        credit(account_id, "50.4")
        record = await withdrawals.request_withdrawal(account_id, "50", RECIPIENT_ADDRESS)

        result = await processor.process(record.id)

        assert result.success
        assert result.error_code is None
        submission = chain.submissions[0]
        assert submission["to"] == RECIPIENT_ADDRESS
        assert submission["raw_amount"] == 50_000_000
        assert submission["gas_limit"] == 60000

        settled = store.get(record.id)
        assert settled.status == TransactionStatus.COMPLETED.value
        assert settled.chain_tx_reference == result.chain_tx_reference
        assert settled.confirmation_count == 1
        assert settled.completed_at is not None
        assert balance_engine.compute_balance(account_id) == Decimal("0")

    @pytest.mark.asyncio
    async def test_submitted_reference_stored_lowercase(self, make_account, credit, withdrawals, processor,
                                                        chain, store):
        account_id = make_account()
        credit(account_id, "10")
        record = await withdrawals.request_withdrawal(account_id, "5", RECIPIENT_ADDRESS)

        submit = chain.submit_transfer

        async def checksummed_submit(*args):
            submitted = await submit(*args)
            return SubmittedTransfer(reference="0x" + submitted.reference[2:].upper())

        chain.submit_transfer = checksummed_submit
        result = await processor.process(record.id)

        assert result.success
        assert result.chain_tx_reference == chain.submissions[0]["reference"]
        assert store.get(record.id).chain_tx_reference == chain.submissions[0]["reference"]

    @pytest.mark.asyncio
    async def test_second_process_rejected(self, make_account, credit, withdrawals, processor, chain):
        account_id = make_account()
        credit(account_id, "50.4")
        record = await withdrawals.request_withdrawal(account_id, "50", RECIPIENT_ADDRESS)
        await processor.process(record.id)

        with pytest.raises(InvalidState):
            await processor.process(record.id)
        assert len(chain.submissions) == 1

    @pytest.mark.asyncio
    async def test_submission_failure_marks_failed_and_releases_funds(self, make_account, credit, withdrawals,
                                                                       processor, chain, store, balance_engine):
        account_id = make_account()
        credit(account_id, "10")
        record = await withdrawals.request_withdrawal(account_id, "5", RECIPIENT_ADDRESS)
        chain.submit_error = ChainClientError("insufficient funds for gas")

        result = await processor.process(record.id)

        assert not result.success
        assert result.error_code == "CHAIN_SUBMISSION_FAILED"
        failed = store.get(record.id)
        assert failed.status == TransactionStatus.FAILED.value
        assert failed.admin_note.startswith("Failed: ")
        assert "insufficient funds for gas" in failed.admin_note
        assert failed.chain_tx_reference is None
        assert balance_engine.compute_balance(account_id) == Decimal("10")

    @pytest.mark.asyncio
    async def test_failure_after_submission_keeps_reference(self, make_account, credit, withdrawals, processor,
                                                            chain, store):
        account_id = make_account()
        credit(account_id, "10")
        record = await withdrawals.request_withdrawal(account_id, "5", RECIPIENT_ADDRESS)
        chain.mined_error = ChainClientError("reverted")

        result = await processor.process(record.id)

        assert not result.success
        assert result.chain_tx_reference is not None
        failed = store.get(record.id)
        assert failed.status == TransactionStatus.FAILED.value
        assert failed.chain_tx_reference == result.chain_tx_reference
        assert f"(submitted as {result.chain_tx_reference})" in failed.admin_note

    @pytest.mark.asyncio
    async def test_failed_withdrawal_is_not_retried(self, make_account, credit, withdrawals, processor, chain):
        account_id = make_account()
        credit(account_id, "10")
        record = await withdrawals.request_withdrawal(account_id, "5", RECIPIENT_ADDRESS)
        chain.submit_error = ChainClientError("boom")
        await processor.process(record.id)

        chain.submit_error = None
        with pytest.raises(InvalidState):
            await processor.process(record.id)
        assert chain.submissions == []


class TestGasMargin:

    @pytest.mark.parametrize("estimate,expected", [
        (50000, 60000),
        (21001, 25202),
        (1, 2),
    ])
    def test_margin_rounds_up(self, store, chain, estimate, expected):
        processor = WithdrawalSettlementProcessor(store, chain, gas_limit_margin=Decimal("1.2"))
        assert processor.apply_gas_margin(estimate) == expected
