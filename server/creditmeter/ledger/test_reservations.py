import datetime as dt
import tempfile
import threading
import unittest
from dataclasses import replace
from pathlib import Path

from sqlalchemy import select

from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import init_db, session_scope
from server.creditmeter.core.models import CreditTransaction, ReservationStatus, TransactionType
from server.creditmeter.ledger.accounts import create_workspace, purchase_credits
from server.creditmeter.ledger.errors import CreditValidationError, InsufficientCreditsError
from server.creditmeter.ledger.reservations import find_reservation_by_request, reserve
from server.creditmeter.ledger.settlement import NOT_FOUND, release, settle, sweep_expired_reservations
from server.creditmeter.ledger.transactions import get_balance, reconcile_workspace
from server.creditmeter.ledger.usage import usage_for_period


class LedgerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.settings = replace(
            Settings.from_env(),
            db_url=f"sqlite:///{Path(self._tmp.name) / 'ledger.db'}",
            write_retry_base_seconds=0.0,
            overrun_allowance_credits=0,
            overrun_allowance_pct=0.0,
        )
        init_db(self.settings)

    def make_workspace(self, credits: int = 100) -> str:
        with session_scope(self.settings) as db:
            workspace = create_workspace(db, settings=self.settings, name="Acme", opening_credits=credits)
            return workspace.id

    def balance(self, workspace_id: str):
        with session_scope(self.settings) as db:
            return get_balance(db, workspace_id)


class TestReserveSettleRelease(LedgerTestCase):
    def test_reserve_moves_estimate_into_hold(self):
        ws = self.make_workspace(100)
        reservation = reserve(self.settings, workspace_id=ws, request_id="req-1", estimated_amount=40)
        self.assertEqual(reservation.status, ReservationStatus.held.value)

        snap = self.balance(ws)
        self.assertEqual((snap.balance, snap.reserved), (60, 40))

    def test_reserve_is_idempotent_per_request(self):
        ws = self.make_workspace(100)
        first = reserve(self.settings, workspace_id=ws, request_id="req-1", estimated_amount=40)
        second = reserve(self.settings, workspace_id=ws, request_id="req-1", estimated_amount=40)
        self.assertEqual(first.id, second.id)
        self.assertEqual(self.balance(ws).reserved, 40)

        with session_scope(self.settings) as db:
            found = find_reservation_by_request(db, "req-1")
            self.assertEqual(found.id, first.id)

    def test_insufficient_credits_rejects_without_mutation(self):
        ws = self.make_workspace(50)
        with self.assertRaises(InsufficientCreditsError) as ctx:
            reserve(self.settings, workspace_id=ws, request_id="req-big", estimated_amount=51)
        self.assertEqual(ctx.exception.required, 51)
        self.assertEqual(ctx.exception.available, 50)

        snap = self.balance(ws)
        self.assertEqual((snap.balance, snap.reserved), (50, 0))
        with session_scope(self.settings) as db:
            self.assertIsNone(find_reservation_by_request(db, "req-big"))

    def test_reserve_validates_amount(self):
        ws = self.make_workspace(50)
        with self.assertRaises(CreditValidationError) as ctx:
            reserve(self.settings, workspace_id=ws, request_id="req-neg", estimated_amount=-1)
        self.assertEqual(ctx.exception.code, "NEGATIVE")
        with self.assertRaises(CreditValidationError) as ctx:
            reserve(self.settings, workspace_id=ws, request_id="req-float", estimated_amount=2.5)
        self.assertEqual(ctx.exception.code, "NOT_INTEGER")

    def test_reserve_validates_hold_duration(self):
        ws = self.make_workspace(50)
        cases = ((10**12, "EXCEEDS_MAXIMUM"), (0, "NOT_POSITIVE"), (-5, "NOT_POSITIVE"), (1.5, "INVALID_TYPE"))
        for ttl, code in cases:
            with self.assertRaises(CreditValidationError) as ctx:
                reserve(
                    self.settings, workspace_id=ws, request_id=f"req-ttl-{ttl}", estimated_amount=10, ttl_seconds=ttl
                )
            self.assertEqual(ctx.exception.code, code)
        self.assertEqual(self.balance(ws).reserved, 0)

        held = reserve(
            self.settings,
            workspace_id=ws,
            request_id="req-ttl-max",
            estimated_amount=10,
            ttl_seconds=self.settings.reservation_max_ttl_seconds,
        )
        ttl = held.expires_at - held.created_at
        self.assertEqual(ttl, dt.timedelta(seconds=self.settings.reservation_max_ttl_seconds))

    def test_refund_on_overestimate(self):
        ws = self.make_workspace(100)
        reservation = reserve(self.settings, workspace_id=ws, request_id="req-1", estimated_amount=50)
        after_reserve = self.balance(ws).balance

        result = settle(self.settings, reservation_id=reservation.id, actual_amount=30)
        self.assertEqual(result.status, ReservationStatus.settled.value)
        self.assertEqual((result.charged, result.refund, result.absorbed), (30, 20, 0))

        snap = self.balance(ws)
        self.assertEqual(snap.balance, after_reserve + 20)
        self.assertEqual(snap.reserved, 0)
        with session_scope(self.settings) as db:
            txn = db.get(CreditTransaction, result.transaction_id)
            self.assertEqual(txn.type, TransactionType.settle.value)
            self.assertEqual(txn.amount, -30)
            self.assertEqual(txn.refund_amount, 20)

    def test_release_restores_full_estimate(self):
        ws = self.make_workspace(100)
        reservation = reserve(self.settings, workspace_id=ws, request_id="req-1", estimated_amount=50)
        result = release(self.settings, reservation_id=reservation.id, reason="provider error")
        self.assertEqual(result.status, ReservationStatus.released.value)
        self.assertEqual(result.release_reason, "provider error")

        snap = self.balance(ws)
        self.assertEqual((snap.balance, snap.reserved), (100, 0))

    def test_settle_twice_is_idempotent(self):
        ws = self.make_workspace(100)
        reservation = reserve(self.settings, workspace_id=ws, request_id="req-1", estimated_amount=50)
        first = settle(self.settings, reservation_id=reservation.id, actual_amount=30)
        second = settle(self.settings, reservation_id=reservation.id, actual_amount=30)

        self.assertFalse(first.already_terminal)
        self.assertTrue(second.already_terminal)
        self.assertEqual(first.transaction_id, second.transaction_id)
        self.assertEqual(second.charged, 30)
        self.assertEqual(self.balance(ws).balance, 70)

        with session_scope(self.settings) as db:
            settles = db.execute(
                select(CreditTransaction).where(CreditTransaction.type == TransactionType.settle.value)
            ).scalars().all()
            self.assertEqual(len(settles), 1)

    def test_release_after_settle_returns_original_outcome(self):
        ws = self.make_workspace(100)
        reservation = reserve(self.settings, workspace_id=ws, request_id="req-1", estimated_amount=50)
        settle(self.settings, reservation_id=reservation.id, actual_amount=10)
        result = release(self.settings, reservation_id=reservation.id, reason="late timeout")
        self.assertTrue(result.already_terminal)
        self.assertEqual(result.status, ReservationStatus.settled.value)
        self.assertEqual(self.balance(ws).balance, 90)

    def test_unknown_reservation_is_not_found(self):
        self.assertEqual(settle(self.settings, reservation_id="missing", actual_amount=1).status, NOT_FOUND)
        self.assertEqual(release(self.settings, reservation_id="missing").status, NOT_FOUND)

    def test_overrun_without_allowance_is_absorbed(self):
        ws = self.make_workspace(100)
        reservation = reserve(self.settings, workspace_id=ws, request_id="req-1", estimated_amount=50)
        result = settle(self.settings, reservation_id=reservation.id, actual_amount=80)
        self.assertEqual((result.charged, result.refund, result.absorbed), (50, 0, 30))

        snap = self.balance(ws)
        self.assertEqual((snap.balance, snap.reserved), (50, 0))
        with session_scope(self.settings) as db:
            adjustment = db.scalar(
                select(CreditTransaction).where(CreditTransaction.type == TransactionType.adjustment.value)
            )
            self.assertEqual(adjustment.amount, 30)
            self.assertEqual((adjustment.balance_delta, adjustment.reserved_delta), (0, 0))

    def test_overrun_allowance_draws_from_balance(self):
        self.settings = replace(self.settings, overrun_allowance_credits=5, overrun_allowance_pct=10.0)
        ws = self.make_workspace(100)
        reservation = reserve(self.settings, workspace_id=ws, request_id="req-1", estimated_amount=50)
        # allowance = 5 + ceil(10% of 50) = 10, so the cap is 60
        result = settle(self.settings, reservation_id=reservation.id, actual_amount=70)
        self.assertEqual((result.charged, result.refund, result.absorbed), (60, 0, 10))
        self.assertEqual(self.balance(ws).balance, 40)

    def test_overrun_never_drives_balance_negative(self):
        self.settings = replace(self.settings, overrun_allowance_credits=20)
        ws = self.make_workspace(55)
        reservation = reserve(self.settings, workspace_id=ws, request_id="req-1", estimated_amount=50)
        result = settle(self.settings, reservation_id=reservation.id, actual_amount=65)
        self.assertEqual((result.charged, result.absorbed), (55, 10))
        snap = self.balance(ws)
        self.assertEqual((snap.balance, snap.reserved), (0, 0))

    def test_settlement_feeds_usage_summary(self):
        ws = self.make_workspace(500)
        for i, actual in enumerate((30, 45)):
            reservation = reserve(
                self.settings,
                workspace_id=ws,
                request_id=f"req-{i}",
                estimated_amount=50,
                service_type="text",
                model="gpt-4",
                provider="openai",
            )
            settle(self.settings, reservation_id=reservation.id, actual_amount=actual)
        reservation = reserve(self.settings, workspace_id=ws, request_id="req-img", estimated_amount=40, service_type="image")
        settle(self.settings, reservation_id=reservation.id, actual_amount=40)

        with session_scope(self.settings) as db:
            report = usage_for_period(db, ws)
        self.assertEqual(report.total_credits, 115)
        self.assertEqual(report.total_requests, 3)
        top = report.lines[0]
        self.assertEqual((top.service_type, top.model, top.credits, top.requests), ("text", "gpt-4", 75, 2))


class TestConservation(LedgerTestCase):
    def test_balance_plus_reserved_tracks_grants_minus_settlements(self):
        ws = self.make_workspace(200)
        purchased = 0
        settled = 0

        r1 = reserve(self.settings, workspace_id=ws, request_id="a", estimated_amount=60)
        r2 = reserve(self.settings, workspace_id=ws, request_id="b", estimated_amount=70)
        settled += settle(self.settings, reservation_id=r1.id, actual_amount=25).charged
        purchase_credits(self.settings, workspace_id=ws, amount=300, reference="cs_test_1")
        purchased += 300
        r3 = reserve(self.settings, workspace_id=ws, request_id="c", estimated_amount=120)
        release(self.settings, reservation_id=r2.id, reason="canceled")
        settled += settle(self.settings, reservation_id=r3.id, actual_amount=120).charged
        reserve(self.settings, workspace_id=ws, request_id="d", estimated_amount=15)

        snap = self.balance(ws)
        self.assertEqual(snap.balance + snap.reserved, 200 + purchased - settled)
        self.assertEqual(snap.reserved, 15)
        self.assertEqual(snap.balance + snap.reserved, snap.credits_granted - snap.credits_consumed)

        with session_scope(self.settings) as db:
            report = reconcile_workspace(db, ws)
        self.assertTrue(report.consistent)
        self.assertEqual(report.transaction_count, 9)


class TestConcurrency(LedgerTestCase):
    def test_no_double_spend_under_concurrent_reserves(self):
        ws = self.make_workspace(100)
        workers = 8
        barrier = threading.Barrier(workers)
        outcomes: list[str] = []
        lock = threading.Lock()

        def _attempt(i: int) -> None:
            barrier.wait()
            try:
                reserve(self.settings, workspace_id=ws, request_id=f"race-{i}", estimated_amount=60)
                outcome = "ok"
            except InsufficientCreditsError:
                outcome = "insufficient"
            except Exception as e:
                outcome = f"error: {e}"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=_attempt, args=(i,)) for i in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(outcomes.count("ok"), 1, outcomes)
        self.assertEqual(outcomes.count("insufficient"), workers - 1, outcomes)
        snap = self.balance(ws)
        self.assertEqual((snap.balance, snap.reserved), (40, 60))

    def test_concurrent_settle_and_release_transition_once(self):
        ws = self.make_workspace(100)
        reservation = reserve(self.settings, workspace_id=ws, request_id="req-1", estimated_amount=50)
        barrier = threading.Barrier(2)
        results = []

        def _settle() -> None:
            barrier.wait()
            results.append(settle(self.settings, reservation_id=reservation.id, actual_amount=20))

        def _release() -> None:
            barrier.wait()
            results.append(release(self.settings, reservation_id=reservation.id, reason="timeout"))

        threads = [threading.Thread(target=_settle), threading.Thread(target=_release)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sorted(r.already_terminal for r in results), [False, True])
        self.assertEqual(results[0].status, results[1].status)
        snap = self.balance(ws)
        self.assertEqual(snap.reserved, 0)
        self.assertIn(snap.balance, (80, 100))


class TestExpirySweep(LedgerTestCase):
    def test_sweep_releases_expired_hold_once(self):
        ws = self.make_workspace(100)
        past = dt.datetime.now(dt.UTC) - dt.timedelta(hours=1)
        stale = reserve(self.settings, workspace_id=ws, request_id="stale", estimated_amount=30, ttl_seconds=60, now=past)
        fresh = reserve(self.settings, workspace_id=ws, request_id="fresh", estimated_amount=20)

        self.assertEqual(sweep_expired_reservations(self.settings), 1)
        self.assertEqual(sweep_expired_reservations(self.settings), 0)

        late = settle(self.settings, reservation_id=stale.id, actual_amount=30)
        self.assertTrue(late.already_terminal)
        self.assertEqual(late.status, ReservationStatus.released.value)
        self.assertEqual(late.release_reason, "expired")

        snap = self.balance(ws)
        self.assertEqual((snap.balance, snap.reserved), (80, 20))
        self.assertEqual(settle(self.settings, reservation_id=fresh.id, actual_amount=20).charged, 20)


if __name__ == "__main__":
    unittest.main()
