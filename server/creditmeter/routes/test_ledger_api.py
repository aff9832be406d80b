import datetime as dt
import tempfile
import unittest
from dataclasses import replace
from pathlib import Path

from fastapi.testclient import TestClient

from server.creditmeter.app import create_app
from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import session_scope
from server.creditmeter.ledger.accounts import create_plan, create_workspace
from server.creditmeter.ledger.reservations import reserve
from server.creditmeter.ledger.settlement import settle


class _RecordingInvoicer:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    def create_invoice_item(self, **kwargs) -> str:
        self.calls.append(kwargs)
        return "ii_api"


class TestLedgerApi(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.settings = replace(
            Settings.from_env(),
            db_url=f"sqlite:///{Path(self._tmp.name) / 'api.db'}",
            api_token="",
            write_retry_base_seconds=0.0,
            overrun_allowance_credits=0,
            overrun_allowance_pct=0.0,
        )
        self.app = create_app(self.settings)
        self.client = TestClient(self.app)
        with session_scope(self.settings) as db:
            plan = create_plan(db, name="starter", credit_limit=100, overage_rate="0.05")
            workspace = create_workspace(
                db,
                settings=self.settings,
                name="Acme",
                plan=plan,
                opening_credits=200,
                stripe_customer_id="cus_api",
            )
            self.ws = workspace.id

    def _reserve(self, request_id: str, amount: int) -> dict:
        resp = self.client.post(
            "/v1/reservations",
            json={"workspace_id": self.ws, "request_id": request_id, "estimated_amount": amount},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()

    def test_health(self):
        self.assertEqual(self.client.get("/healthz").json(), {"ok": True})
        self.assertEqual(self.client.get("/readyz").status_code, 200)

    def test_estimate(self):
        resp = self.client.post(
            "/v1/estimate",
            json={"model": "gpt-4", "capability": "text", "params": {"input_tokens": 1000, "max_output_tokens": 500}},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["credits"], 45)

        resp = self.client.post("/v1/estimate", json={"model": "nope", "capability": "text"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "unknown_model")

        resp = self.client.post(
            "/v1/estimate",
            json={"model": "dall-e-3", "capability": "image", "params": {"size": "1x1"}},
        )
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"], "unknown_image_size")

    def test_reserve_from_estimate_and_settle_with_usage(self):
        resp = self.client.post(
            "/v1/reservations",
            json={
                "workspace_id": self.ws,
                "request_id": "chat-1",
                "model": "gpt-4",
                "capability": "text",
                "params": {"input_tokens": 1000, "max_output_tokens": 500},
            },
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        reservation = resp.json()
        self.assertEqual(reservation["estimated_amount"], 45)
        self.assertEqual(reservation["provider"], "openai")
        self.assertEqual(reservation["status"], "HELD")

        resp = self.client.post(
            f"/v1/reservations/{reservation['id']}/settle",
            json={"usage": {"prompt_tokens": 700, "completion_tokens": 300}},
        )
        body = resp.json()
        self.assertEqual((body["status"], body["charged"], body["refund"]), ("SETTLED", 30, 15))

        balance = self.client.get(f"/v1/workspaces/{self.ws}/balance").json()
        self.assertEqual((balance["balance"], balance["reserved"]), (170, 0))
        self.assertEqual(balance["plan_credit_limit"], 100)

        detail = self.client.get(f"/v1/reservations/{reservation['id']}").json()
        self.assertEqual(detail["settled_amount"], 30)

    def test_insufficient_credits_is_402(self):
        resp = self.client.post(
            "/v1/reservations",
            json={"workspace_id": self.ws, "request_id": "big", "estimated_amount": 201},
        )
        self.assertEqual(resp.status_code, 402)
        body = resp.json()
        self.assertEqual(body["error"], "insufficient_credits")
        self.assertEqual((body["required"], body["available"]), (201, 200))

    def test_unknown_workspace_and_reservation(self):
        resp = self.client.get("/v1/workspaces/missing/balance")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"], "workspace_not_found")

        self.assertEqual(self.client.get("/v1/reservations/missing").status_code, 404)

        resp = self.client.post("/v1/reservations/missing/settle", json={"actual_amount": 3})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "NOT_FOUND")

    def test_release_then_settle_is_noop(self):
        reservation = self._reserve("r-rel", 50)
        resp = self.client.post(f"/v1/reservations/{reservation['id']}/release", json={"reason": "client cancelled"})
        self.assertEqual(resp.json()["status"], "RELEASED")

        resp = self.client.post(f"/v1/reservations/{reservation['id']}/settle", json={"actual_amount": 10})
        body = resp.json()
        self.assertEqual(body["status"], "RELEASED")
        self.assertTrue(body["already_terminal"])
        self.assertEqual(self.client.get(f"/v1/workspaces/{self.ws}/balance").json()["balance"], 200)

    def test_transactions_and_usage(self):
        self.client.post(f"/v1/workspaces/{self.ws}/purchases", json={"amount": 25, "reference": "cs_1"})
        self.client.post(f"/v1/workspaces/{self.ws}/adjustments", json={"amount": -5, "reason": "correction"})
        reservation = self._reserve("r-usage", 20)
        self.client.post(f"/v1/reservations/{reservation['id']}/settle", json={"actual_amount": 12})

        page = self.client.get(f"/v1/workspaces/{self.ws}/transactions", params={"limit": 2}).json()
        self.assertEqual(page["total"], 5)
        self.assertEqual([item["type"] for item in page["items"]], ["SETTLE", "RESERVE"])
        self.assertEqual(page["next_offset"], 2)

        only = self.client.get(
            f"/v1/workspaces/{self.ws}/transactions",
            params=[("type", "purchase"), ("type", "adjustment")],
        ).json()
        self.assertEqual(sorted(item["type"] for item in only["items"]), ["ADJUSTMENT", "PURCHASE"])

        usage = self.client.get(f"/v1/workspaces/{self.ws}/usage").json()
        self.assertEqual((usage["total_credits"], usage["total_requests"]), (12, 1))

        resp = self.client.post(f"/v1/workspaces/{self.ws}/adjustments", json={"amount": 5, "reason": ""})
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"], "missing_reason")

    def test_overage_preview_and_evaluate(self):
        invoicer = _RecordingInvoicer()
        self.app.state.invoicer = invoicer
        reservation = self._reserve("r-over", 150)
        self.client.post(f"/v1/reservations/{reservation['id']}/settle", json={"actual_amount": 150})

        preview = self.client.get(f"/v1/workspaces/{self.ws}/overage").json()
        self.assertEqual(preview["overage_units"], 50)
        self.assertEqual(preview["charge"], "2.50")
        self.assertIsNone(preview["invoice_id"])

        # The current period is still open, so nothing is billed yet.
        running = self.client.post(f"/v1/workspaces/{self.ws}/overage", json={}).json()
        self.assertFalse(running["emitted"])
        self.assertEqual(running["overage_units"], 50)
        self.assertIsNone(running["invoice_id"])
        self.assertEqual(invoicer.calls, [])

        opened = dt.datetime.now(dt.UTC) - dt.timedelta(days=self.settings.billing_period_days + 5)
        with session_scope(self.settings) as db:
            plan = create_plan(db, name="closed", credit_limit=100, overage_rate="0.05")
            closed = create_workspace(
                db,
                settings=self.settings,
                name="Closed",
                plan=plan,
                opening_credits=200,
                stripe_customer_id="cus_closed",
                now=opened,
            ).id
        used_at = opened + dt.timedelta(days=1)
        held = reserve(self.settings, workspace_id=closed, request_id="r-closed", estimated_amount=150, now=used_at)
        settle(self.settings, reservation_id=held.id, actual_amount=150, now=used_at)

        first = self.client.post(f"/v1/workspaces/{closed}/overage", json={}).json()
        self.assertTrue(first["emitted"])
        self.assertEqual(first["amount_cents"], 250)
        self.assertEqual(first["invoice_status"], "sent")

        second = self.client.post(f"/v1/workspaces/{closed}/overage", json={}).json()
        self.assertFalse(second["emitted"])
        self.assertEqual(second["invoice_id"], first["invoice_id"])
        self.assertEqual(len(invoicer.calls), 1)

    def test_reserve_rejects_out_of_range_hold(self):
        for ttl in (0, 10**12):
            resp = self.client.post(
                "/v1/reservations",
                json={"workspace_id": self.ws, "request_id": f"r-ttl-{ttl}", "estimated_amount": 5, "ttl_seconds": ttl},
            )
            self.assertEqual(resp.status_code, 422, resp.text)

        resp = self.client.post(
            "/v1/reservations",
            json={
                "workspace_id": self.ws,
                "request_id": "r-ttl-long",
                "estimated_amount": 5,
                "ttl_seconds": self.settings.reservation_max_ttl_seconds + 1,
            },
        )
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"], "exceeds_maximum")
        self.assertEqual(self.client.get(f"/v1/workspaces/{self.ws}/balance").json()["reserved"], 0)

    def test_transaction_window_accepts_offset_timestamps(self):
        self._reserve("r-tz", 10)
        plus_two = dt.timezone(dt.timedelta(hours=2))
        recent = (dt.datetime.now(dt.UTC) - dt.timedelta(minutes=10)).astimezone(plus_two)

        page = self.client.get(f"/v1/workspaces/{self.ws}/transactions", params={"start": recent.isoformat()}).json()
        self.assertEqual(page["total"], 2)
        page = self.client.get(f"/v1/workspaces/{self.ws}/transactions", params={"end": recent.isoformat()}).json()
        self.assertEqual(page["total"], 0)

    def test_bearer_token(self):
        app = create_app(replace(self.settings, api_token="s3cret"))
        client = TestClient(app)
        self.assertEqual(client.get(f"/v1/workspaces/{self.ws}/balance").status_code, 401)
        resp = client.get(
            f"/v1/workspaces/{self.ws}/balance",
            headers={"Authorization": "Bearer s3cret"},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(client.get("/healthz").status_code, 200)


if __name__ == "__main__":
    unittest.main()
