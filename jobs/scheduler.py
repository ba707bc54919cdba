"""Background maintenance jobs for the settlement ledger"""

import logging
from datetime import timedelta

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from models import TransactionKind
from services.deposit_intent_registry import DepositIntentRegistry
from services.transaction_store import TransactionStore
from utils.background_task_runner import run_io_task
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.financial_audit_logger import (
    FinancialContext, FinancialEventType, financial_audit_logger
)

logger = logging.getLogger(__name__)


class LedgerScheduler:
    """
    Periodic housekeeping around the ledger.

    Jobs only clean up expired intents and report stuck withdrawals; they never
    change a transaction's status. A withdrawal left in processing may already
    be on chain and is reconciled by an operator.
    """

    def __init__(self, intents: DepositIntentRegistry, store: TransactionStore,
                 stale_after: timedelta = None):
        self.intents = intents
        self.store = store
        self.stale_after = stale_after or timedelta(minutes=Config.STALE_WITHDRAWAL_MINUTES)

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Global coalescing to prevent job pileup
            'max_instances': 1,
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register all maintenance jobs"""
        self.scheduler.add_job(
            self.purge_expired_deposit_intents,
            trigger=IntervalTrigger(hours=1),
            id="purge_expired_deposit_intents",
            name="🧹 Purge Expired Deposit Intents",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.add_job(
            self.report_stale_withdrawals,
            trigger=IntervalTrigger(minutes=10),
            id="report_stale_withdrawals",
            name="🚨 Report Stale Withdrawals",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(f"✅ Scheduled {len(self.scheduler.get_jobs())} ledger maintenance jobs")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 Ledger scheduler started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("🛑 Ledger scheduler stopped")

    async def purge_expired_deposit_intents(self) -> int:
        """Delete intents whose TTL has passed; reads already ignore them"""
        try:
            removed = await run_io_task(self.intents.purge_expired)
        except Exception as e:
            logger.error(f"❌ INTENT_PURGE: cleanup failed - {e}")
            return 0

        if removed:
            logger.info(f"✅ INTENT_PURGE: removed {removed} expired deposit intents")
        else:
            logger.debug("INTENT_PURGE: nothing to remove")
        return removed

    async def report_stale_withdrawals(self) -> int:
        """Report withdrawals stuck in processing longer than the threshold"""
        cutoff = get_naive_utc_now() - self.stale_after
        try:
            stale = await run_io_task(self.store.find_processing_older_than, TransactionKind.WITHDRAWAL, cutoff)
        except Exception as e:
            logger.error(f"❌ STALE_WITHDRAWALS: check failed - {e}")
            return 0

        for record in stale:
            logger.critical(
                f"🚨 STALE_WITHDRAWAL: #{record.id} account={record.account_id} "
                f"amount={MonetaryDecimal.format_token(record.amount)} "
                f"reference={record.chain_tx_reference or 'not submitted'} since={record.updated_at.isoformat()}"
            )
            financial_audit_logger.log_financial_event(
                event_type=FinancialEventType.STALE_WITHDRAWAL_DETECTED,
                account_id=record.account_id,
                transaction_id=record.id,
                financial_context=FinancialContext(
                    amount=record.amount, currency=Config.TOKEN_SYMBOL, fee_amount=record.fee
                ),
                previous_state=record.status,
                new_state=record.status,
                additional_data={"reference": record.chain_tx_reference},
            )
        return len(stale)
