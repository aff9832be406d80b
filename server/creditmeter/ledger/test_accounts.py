import datetime as dt
import tempfile
import unittest
from dataclasses import replace
from pathlib import Path

from sqlalchemy import delete, select, update

from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import init_db, session_scope
from server.creditmeter.core.models import CreditTransaction, TransactionType, UsageSummary, Workspace
from server.creditmeter.ledger.accounts import (
    adjust_credits,
    create_plan,
    create_workspace,
    grant_allotment,
    purchase_credits,
)
from server.creditmeter.ledger.errors import (
    CreditValidationError,
    InsufficientCreditsError,
    LedgerIntegrityError,
    WorkspaceNotFoundError,
)
from server.creditmeter.ledger.reservations import reserve
from server.creditmeter.ledger.settlement import settle
from server.creditmeter.ledger.transactions import (
    append_transaction,
    get_balance,
    list_transactions,
    load_workspace,
    reconcile_workspace,
)
from server.creditmeter.ledger.usage import replay_usage, usage_for_period


class TestAccounts(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.settings = replace(
            Settings.from_env(),
            db_url=f"sqlite:///{Path(self._tmp.name) / 'accounts.db'}",
            write_retry_base_seconds=0.0,
        )
        init_db(self.settings)
        with session_scope(self.settings) as db:
            plan = create_plan(db, name="team", credit_limit=1000, overage_rate="0.02", monthly_allotment=250)
            workspace = create_workspace(
                db,
                settings=self.settings,
                name="Acme",
                owner_email="Owner@Example.com",
                plan=plan,
            )
            self.ws = workspace.id

    def test_workspace_opens_with_plan_allotment(self):
        with session_scope(self.settings) as db:
            snap = get_balance(db, self.ws)
            page = list_transactions(db, self.ws)
            workspace = load_workspace(db, self.ws)
            self.assertEqual(workspace.owner_email, "owner@example.com")
        self.assertEqual(snap.balance, 250)
        self.assertEqual(snap.plan_credit_limit, 1000)
        self.assertEqual(page.total, 1)
        self.assertEqual(page.items[0].type, TransactionType.grant.value)
        self.assertEqual(
            snap.billing_period_end - snap.billing_period_start,
            dt.timedelta(days=self.settings.billing_period_days),
        )

    def test_purchase_is_idempotent_per_reference(self):
        first = purchase_credits(self.settings, workspace_id=self.ws, amount=500, reference="cs_123")
        second = purchase_credits(self.settings, workspace_id=self.ws, amount=500, reference="cs_123")
        self.assertEqual(first.id, second.id)
        self.assertEqual(first.balance_after, 750)

        with session_scope(self.settings) as db:
            self.assertEqual(get_balance(db, self.ws).balance, 750)

    def test_purchase_validation(self):
        with self.assertRaises(CreditValidationError) as ctx:
            purchase_credits(self.settings, workspace_id=self.ws, amount=0, reference="cs_zero")
        self.assertEqual(ctx.exception.code, "NOT_POSITIVE")
        with self.assertRaises(CreditValidationError) as ctx:
            purchase_credits(self.settings, workspace_id=self.ws, amount=True, reference="cs_bool")
        self.assertEqual(ctx.exception.code, "INVALID_TYPE")
        with self.assertRaises(CreditValidationError) as ctx:
            purchase_credits(self.settings, workspace_id=self.ws, amount=2_000_000_000, reference="cs_big")
        self.assertEqual(ctx.exception.code, "EXCEEDS_MAXIMUM")
        with self.assertRaises(WorkspaceNotFoundError):
            purchase_credits(self.settings, workspace_id="nope", amount=10, reference="cs_nope")

    def test_grant_allotment_is_idempotent(self):
        grant_allotment(self.settings, workspace_id=self.ws, amount=100, reference="promo:launch")
        grant_allotment(self.settings, workspace_id=self.ws, amount=100, reference="promo:launch")
        with session_scope(self.settings) as db:
            self.assertEqual(get_balance(db, self.ws).balance, 350)

    def test_adjustments(self):
        adjust_credits(self.settings, workspace_id=self.ws, amount=50, reason="goodwill")
        txn = adjust_credits(self.settings, workspace_id=self.ws, amount=-100, reason="duplicate grant")
        self.assertEqual(txn.type, TransactionType.adjustment.value)
        self.assertEqual(txn.balance_after, 200)

        with self.assertRaises(InsufficientCreditsError):
            adjust_credits(self.settings, workspace_id=self.ws, amount=-201, reason="too much")
        with self.assertRaises(CreditValidationError) as ctx:
            adjust_credits(self.settings, workspace_id=self.ws, amount=10, reason="  ")
        self.assertEqual(ctx.exception.code, "MISSING_REASON")

        with session_scope(self.settings) as db:
            snap = get_balance(db, self.ws)
        self.assertEqual(snap.balance, 200)
        self.assertEqual(snap.credits_granted - snap.credits_consumed, 200)

    def test_integrity_violation_is_never_committed(self):
        with self.assertRaises(LedgerIntegrityError):
            with session_scope(self.settings) as db:
                workspace = load_workspace(db, self.ws)
                append_transaction(
                    db,
                    workspace=workspace,
                    type=TransactionType.adjustment,
                    amount=-300,
                    balance_delta=-300,
                    description="bad",
                )
        with session_scope(self.settings) as db:
            self.assertEqual(get_balance(db, self.ws).balance, 250)

    def test_transactions_are_immutable(self):
        with self.assertRaises(RuntimeError):
            with session_scope(self.settings) as db:
                txn = db.scalar(select(CreditTransaction).where(CreditTransaction.workspace_id == self.ws))
                txn.description = "rewritten"
        with self.assertRaises(RuntimeError):
            with session_scope(self.settings) as db:
                txn = db.scalar(select(CreditTransaction).where(CreditTransaction.workspace_id == self.ws))
                db.delete(txn)

    def test_list_transactions_paginates_newest_first(self):
        for i in range(5):
            purchase_credits(self.settings, workspace_id=self.ws, amount=10 + i, reference=f"cs_{i}")

        with session_scope(self.settings) as db:
            page = list_transactions(db, self.ws, limit=2)
            self.assertEqual(page.total, 6)
            self.assertEqual([t.amount for t in page.items], [14, 13])
            self.assertEqual(page.next_offset, 2)

            last = list_transactions(db, self.ws, limit=2, offset=4)
            self.assertEqual([t.amount for t in last.items], [10, 250])
            self.assertIsNone(last.next_offset)

            grants = list_transactions(db, self.ws, types=["grant"])
            self.assertEqual(grants.total, 1)

            future = dt.datetime.now(dt.UTC) + dt.timedelta(days=1)
            self.assertEqual(list_transactions(db, self.ws, start=future).total, 0)

    def test_list_transactions_converts_offset_timestamps(self):
        purchase_credits(self.settings, workspace_id=self.ws, amount=10, reference="cs_tz")
        plus_two = dt.timezone(dt.timedelta(hours=2))
        recent = (dt.datetime.now(dt.UTC) - dt.timedelta(minutes=10)).astimezone(plus_two)
        with session_scope(self.settings) as db:
            self.assertEqual(list_transactions(db, self.ws, start=recent).total, 2)
            self.assertEqual(list_transactions(db, self.ws, end=recent).total, 0)

    def test_write_refused_when_stored_balance_disagrees_with_ledger(self):
        with session_scope(self.settings) as db:
            db.execute(
                update(Workspace)
                .where(Workspace.id == self.ws)
                .values(balance=999)
                .execution_options(synchronize_session=False)
            )
        with self.assertRaises(LedgerIntegrityError):
            purchase_credits(self.settings, workspace_id=self.ws, amount=5, reference="cs_drifted")
        with session_scope(self.settings) as db:
            report = reconcile_workspace(db, self.ws)
        self.assertEqual(report.transaction_count, 1)
        self.assertEqual(report.stored_balance, 999)

    def test_reconcile_detects_drift(self):
        purchase_credits(self.settings, workspace_id=self.ws, amount=40, reference="cs_rec")
        with session_scope(self.settings) as db:
            report = reconcile_workspace(db, self.ws)
        self.assertTrue(report.consistent)
        self.assertEqual(report.replayed_balance, 290)

        with session_scope(self.settings) as db:
            db.execute(
                update(Workspace)
                .where(Workspace.id == self.ws)
                .values(balance=999)
                .execution_options(synchronize_session=False)
            )
        with session_scope(self.settings) as db:
            report = reconcile_workspace(db, self.ws)
        self.assertFalse(report.consistent)
        self.assertEqual((report.stored_balance, report.replayed_balance), (999, 290))


class TestUsageReplay(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.settings = replace(
            Settings.from_env(),
            db_url=f"sqlite:///{Path(self._tmp.name) / 'usage.db'}",
            write_retry_base_seconds=0.0,
        )
        init_db(self.settings)
        with session_scope(self.settings) as db:
            self.ws = create_workspace(db, settings=self.settings, opening_credits=1000).id

    def test_replay_matches_incremental_summary(self):
        for i, (model, actual) in enumerate((("gpt-4", 40), ("gpt-4", 25), ("whisper-1", 9))):
            reservation = reserve(
                self.settings,
                workspace_id=self.ws,
                request_id=f"r{i}",
                estimated_amount=50,
                service_type="transcription" if model == "whisper-1" else "text",
                model=model,
                provider="openai",
            )
            settle(self.settings, reservation_id=reservation.id, actual_amount=actual)

        with session_scope(self.settings) as db:
            workspace = load_workspace(db, self.ws)
            start, end = workspace.billing_period_start, workspace.billing_period_end
            incremental = usage_for_period(db, self.ws)
            replayed = replay_usage(db, self.ws, period_start=start, period_end=end)
        self.assertEqual(incremental.total_credits, 74)
        self.assertEqual(replayed.summary()["breakdown"], incremental.summary()["breakdown"])

        with session_scope(self.settings) as db:
            db.execute(delete(UsageSummary).where(UsageSummary.workspace_id == self.ws))
        with session_scope(self.settings) as db:
            self.assertEqual(usage_for_period(db, self.ws).total_credits, 0)
            replay_usage(db, self.ws, period_start=start, period_end=end, rebuild=True)
        with session_scope(self.settings) as db:
            rebuilt = usage_for_period(db, self.ws)
        self.assertEqual(rebuilt.total_credits, 74)
        self.assertEqual(rebuilt.total_requests, 3)


if __name__ == "__main__":
    unittest.main()
