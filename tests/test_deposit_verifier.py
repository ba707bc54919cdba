"""
Deposit verification against the chain

Covers the verification order, the exact-amount rule and double-settlement
protection.
"""

import pytest
from decimal import Decimal

from models import TransactionKind, TransactionStatus
from services.blockchain.client import ChainClientError
from services.deposit_verifier import DepositSettlementVerifier
from utils.settlement_errors import (
    AmountMismatch, DuplicateSettlement, InsufficientConfirmations, InvalidReference,
    NoOpenIntent, NoTransferFound, NotConfirmed
)

from conftest import DEPOSIT_ADDRESS, RECIPIENT_ADDRESS, tx_hash

EXPECTED = Decimal("10.1234")


@pytest.fixture
def verifier(store, intents, chain):
    return DepositSettlementVerifier(store, intents, chain, deposit_address=DEPOSIT_ADDRESS, min_confirmations=5)


@pytest.fixture
def account_with_intent(make_account, intents):
    account_id = make_account()
    intents.open(account_id, expected_amount=EXPECTED)
    return account_id


def deposits_for(store, account_id):
    return [r for r in store.history_for_account(account_id) if r.kind == TransactionKind.DEPOSIT.value]


class TestSuccessfulDeposit:

    @pytest.mark.asyncio
    async def test_exact_amount_is_credited(self, verifier, chain, store, balance_engine, intents,
                                            account_with_intent):
        reference = tx_hash(1)
        chain.add_transfer(reference, EXPECTED, block_number=100)
        chain.height = 106

        settlement = await verifier.verify(account_with_intent, reference)

        assert settlement.amount == EXPECTED
        assert settlement.confirmations == 6
        assert balance_engine.compute_balance(account_with_intent) == EXPECTED

        record = store.get(settlement.transaction_id)
        assert record.status == TransactionStatus.COMPLETED.value
        assert record.chain_tx_reference == reference
        assert record.confirmation_count == 6
        assert record.completed_at is not None
        # Intent is consumed by the settlement
        assert intents.get(account_with_intent) is None

    @pytest.mark.asyncio
    async def test_exactly_min_confirmations_is_enough(self, verifier, chain, account_with_intent):
        reference = tx_hash(2)
        chain.add_transfer(reference, EXPECTED, block_number=100)
        chain.height = 105

        settlement = await verifier.verify(account_with_intent, reference)
        assert settlement.confirmations == 5

    @pytest.mark.asyncio
    async def test_reference_whitespace_trimmed(self, verifier, chain, account_with_intent):
        reference = tx_hash(3)
        chain.add_transfer(reference, EXPECTED)
        chain.height = 110

        settlement = await verifier.verify(account_with_intent, f"  {reference}\n")
        assert settlement.chain_tx_reference == reference


class TestRejectedDeposit:

    @pytest.mark.asyncio
    async def test_amount_mismatch_creates_no_record(self, verifier, chain, store, balance_engine, intents,
                                                     account_with_intent):
        reference = tx_hash(4)
        chain.add_transfer(reference, Decimal("10.1235"), block_number=100)
        chain.height = 106

        with pytest.raises(AmountMismatch):
            await verifier.verify(account_with_intent, reference)

        assert deposits_for(store, account_with_intent) == []
        assert balance_engine.compute_balance(account_with_intent) == Decimal("0")
        # Intent stays open for the correct transfer
        assert intents.get(account_with_intent) is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reference", ["", "0x1234", "not-a-hash", "0x" + "g" * 64])
    async def test_malformed_reference(self, verifier, account_with_intent, reference):
        with pytest.raises(InvalidReference):
            await verifier.verify(account_with_intent, reference)

    @pytest.mark.asyncio
    async def test_no_intent(self, verifier, chain, make_account):
        account_id = make_account()
        chain.add_transfer(tx_hash(5), EXPECTED)
        chain.height = 110

        with pytest.raises(NoOpenIntent):
            await verifier.verify(account_id, tx_hash(5))

    @pytest.mark.asyncio
    async def test_intent_expired(self, verifier, chain, clock, account_with_intent):
        reference = tx_hash(6)
        chain.add_transfer(reference, EXPECTED)
        chain.height = 110
        clock.advance(hours=24, seconds=1)

        with pytest.raises(NoOpenIntent):
            await verifier.verify(account_with_intent, reference)

    @pytest.mark.asyncio
    async def test_not_mined_is_retryable(self, verifier, account_with_intent):
        with pytest.raises(NotConfirmed) as exc_info:
            await verifier.verify(account_with_intent, tx_hash(7))
        assert exc_info.value.is_retryable

    @pytest.mark.asyncio
    async def test_chain_unavailable_is_not_confirmed(self, verifier, chain, account_with_intent):
        chain.receipt_error = ChainClientError("node down")

        with pytest.raises(NotConfirmed):
            await verifier.verify(account_with_intent, tx_hash(8))

    @pytest.mark.asyncio
    async def test_insufficient_confirmations(self, verifier, chain, store, account_with_intent):
        reference = tx_hash(9)
        chain.add_transfer(reference, EXPECTED, block_number=100)
        chain.height = 104

        with pytest.raises(InsufficientConfirmations) as exc_info:
            await verifier.verify(account_with_intent, reference)

        assert exc_info.value.is_retryable
        assert deposits_for(store, account_with_intent) == []

    @pytest.mark.asyncio
    async def test_transfer_to_other_address(self, verifier, chain, account_with_intent):
        reference = tx_hash(10)
        chain.add_transfer(reference, EXPECTED, to_address=RECIPIENT_ADDRESS)
        chain.height = 110

        with pytest.raises(NoTransferFound):
            await verifier.verify(account_with_intent, reference)

    @pytest.mark.asyncio
    async def test_reverted_transaction(self, verifier, chain, account_with_intent):
        reference = tx_hash(11)
        chain.add_transfer(reference, EXPECTED, status=0)
        chain.height = 110

        with pytest.raises(NoTransferFound):
            await verifier.verify(account_with_intent, reference)


class TestDoubleSettlement:

    @pytest.mark.asyncio
    async def test_same_reference_never_settles_twice(self, verifier, chain, store, intents, balance_engine,
                                                      account_with_intent):
        reference = tx_hash(12)
        chain.add_transfer(reference, EXPECTED)
        chain.height = 110
        await verifier.verify(account_with_intent, reference)

        # A fresh intent for the same amount must not let the old transfer count again
        intents.open(account_with_intent, expected_amount=EXPECTED)
        with pytest.raises(DuplicateSettlement):
            await verifier.verify(account_with_intent, reference)

        assert len(deposits_for(store, account_with_intent)) == 1
        assert balance_engine.compute_balance(account_with_intent) == EXPECTED

    @pytest.mark.asyncio
    async def test_other_account_cannot_claim_settled_transfer(self, verifier, chain, store, intents,
                                                               make_account, account_with_intent):
        reference = tx_hash(13)
        chain.add_transfer(reference, EXPECTED)
        chain.height = 110
        await verifier.verify(account_with_intent, reference)

        bob = make_account("1002", "bob")
        intents.open(bob, expected_amount=EXPECTED)
        with pytest.raises(DuplicateSettlement):
            await verifier.verify(bob, reference)

        assert deposits_for(store, bob) == []

    @pytest.mark.asyncio
    async def test_reference_case_change_does_not_settle_twice(self, verifier, chain, store, intents,
                                                                balance_engine, account_with_intent):
        reference = tx_hash(0xABCDEF)
        chain.add_transfer(reference, EXPECTED)
        chain.height = 110
        await verifier.verify(account_with_intent, reference)

        intents.open(account_with_intent, expected_amount=EXPECTED)
        with pytest.raises(DuplicateSettlement):
            await verifier.verify(account_with_intent, "0x" + reference[2:].upper())

        assert len(deposits_for(store, account_with_intent)) == 1
        assert balance_engine.compute_balance(account_with_intent) == EXPECTED

    @pytest.mark.asyncio
    async def test_uppercase_reference_stored_lowercase(self, verifier, chain, store, account_with_intent):
        reference = tx_hash(0xFACE)
        chain.add_transfer(reference, EXPECTED)
        chain.height = 110

        settlement = await verifier.verify(account_with_intent, "0x" + reference[2:].upper())

        assert settlement.chain_tx_reference == reference
        assert store.get(settlement.transaction_id).chain_tx_reference == reference
        assert store.find_settled_by_reference(reference.upper().replace("0X", "0x")) is not None

    @pytest.mark.asyncio
    async def test_second_verification_after_settlement_finds_no_intent(self, verifier, chain,
                                                                        account_with_intent):
        reference = tx_hash(14)
        chain.add_transfer(reference, EXPECTED)
        chain.height = 110
        await verifier.verify(account_with_intent, reference)

        with pytest.raises(NoOpenIntent):
            await verifier.verify(account_with_intent, reference)
