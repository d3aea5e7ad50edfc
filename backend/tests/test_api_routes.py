"""
HTTP surface: public catalog, Stripe webhook, admin plans/jobs.
Uses the shared TestClient with in-memory services (no MongoDB, no Stripe, no CRM).
"""
import asyncio
import io
import json
from unittest.mock import patch

from openpyxl import Workbook, load_workbook

from errors import AdapterPermanent
from models import JobState, Plan, PlanStatus
from services.job_store import job_id_for_event
from services.plan_spreadsheet import COLUMNS

CHECKOUT_SESSION_ID = "cs_test_api_001"


def _seed_plan(services, plan_id="snap-starter", status=PlanStatus.PUBLISHED, **kwargs):
    plan = Plan(
        plan_id=plan_id,
        name=kwargs.pop("name", "Starter Snapshot"),
        price_cents=kwargs.pop("price_cents", 9700),
        template_ids=kwargs.pop("template_ids", ["snapshot_a"]),
        status=status,
        **kwargs,
    )

    async def _():
        stored, _ = await services.catalog.upsert_plan(plan)
        await services.templates.set_templates(stored.plan_id, stored.template_ids)
        return stored

    return asyncio.run(_())


def _checkout_payload(event_id="evt_api_001", plan_id="snap-starter"):
    return json.dumps({
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": CHECKOUT_SESSION_ID,
            "customer": "cus_api_001",
            "customer_details": {"email": "owner@example.com", "name": "Acme Dental"},
            "payment_status": "paid",
            "metadata": {"plan_id": plan_id},
        }},
    }).encode()


class TestPublicRoutes:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_snapshots_lists_published_only(self, client, services):
        _seed_plan(services, "snap-starter", payment_link_url="https://buy.stripe.test/1")
        _seed_plan(services, "snap-draft", status=PlanStatus.DRAFT)
        _seed_plan(services, "snap-old", status=PlanStatus.ARCHIVED)

        response = client.get("/api/snapshots")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["snapshots"][0]["plan_id"] == "snap-starter"
        assert data["snapshots"][0]["payment_link_url"] == "https://buy.stripe.test/1"
        assert "template_ids" not in data["snapshots"][0]

    def test_snapshot_detail_404_for_draft(self, client, services):
        _seed_plan(services, "snap-draft", status=PlanStatus.DRAFT)
        assert client.get("/api/snapshots/snap-draft").status_code == 404

    def test_checkout_returns_session_url(self, client, services):
        _seed_plan(services, stripe_price_id="price_123")
        with patch("services.stripe_gateway.stripe.checkout.Session.create",
                   return_value={"url": "https://checkout.stripe.test/s/1"}) as create:
            response = client.post("/api/checkout/snap-starter", json={})

        assert response.status_code == 200
        assert response.json()["checkout_url"] == "https://checkout.stripe.test/s/1"
        assert create.call_args.kwargs["cancel_url"] == "https://app.example.com/snapshots/snap-starter"

    def test_checkout_unknown_plan(self, client):
        assert client.post("/api/checkout/ghost", json={}).status_code == 404

    def test_checkout_without_price_is_conflict(self, client, services):
        _seed_plan(services)
        assert client.post("/api/checkout/snap-starter", json={}).status_code == 409


class TestWebhookRoute:

    def test_checkout_webhook_enqueues_job(self, client, services):
        _seed_plan(services)

        response = client.post("/api/webhook/stripe", content=_checkout_payload())

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "received"
        assert body["details"]["job_id"] == job_id_for_event(CHECKOUT_SESSION_ID)

    def test_alias_and_redelivery_create_one_job(self, client, services):
        _seed_plan(services)

        client.post("/api/webhook/stripe", content=_checkout_payload())
        client.post("/api/webhooks/stripe", content=_checkout_payload(event_id="evt_api_002"))
        jobs = asyncio.run(services.jobs.list_jobs())

        assert len(jobs) == 1

    def test_unknown_plan_still_acknowledged(self, client):
        response = client.post("/api/webhook/stripe", content=_checkout_payload(plan_id="ghost"))
        assert response.status_code == 200
        assert response.json()["message"] == "Plan not found"

    def test_bad_signature_rejected(self, client, services):
        services.gateway.webhook_secret = "whsec_test_secret"
        response = client.post(
            "/api/webhook/stripe",
            content=_checkout_payload(),
            headers={"Stripe-Signature": "t=1,v1=deadbeef"},
        )
        assert response.status_code == 400

    def test_infrastructure_failure_asks_for_redelivery(self, client, services):
        _seed_plan(services)
        with patch.object(services.webhooks, "_handle_event", side_effect=RuntimeError("mongo down")):
            response = client.post("/api/webhook/stripe", content=_checkout_payload())
        assert response.status_code == 500


class TestAdminAuth:

    def test_requires_token(self, client):
        assert client.get("/api/admin/jobs").status_code == 401

    def test_invalid_token(self, client):
        response = client.get("/api/admin/jobs", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_operator_can_read_but_not_write(self, client, operator_headers):
        assert client.get("/api/admin/jobs", headers=operator_headers).status_code == 200
        response = client.post("/api/admin/plans/snap-starter/archive", headers=operator_headers)
        assert response.status_code == 403


class TestAdminPlans:

    def test_list_plans_by_status(self, client, services, admin_headers):
        _seed_plan(services, "snap-starter")
        _seed_plan(services, "snap-draft", status=PlanStatus.DRAFT)

        response = client.get("/api/admin/plans?status=DRAFT", headers=admin_headers)

        assert response.status_code == 200
        assert [p["plan_id"] for p in response.json()["plans"]] == ["snap-draft"]

    def test_export_returns_workbook(self, client, services, admin_headers):
        _seed_plan(services)

        response = client.get("/api/admin/plans/export", headers=admin_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith(
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        )
        rows = list(load_workbook(io.BytesIO(response.content)).active.iter_rows(values_only=True))
        assert rows[1][0] == "snap-starter"

    def test_import_upload(self, client, services, admin_headers):
        wb = Workbook()
        ws = wb.active
        ws.append(COLUMNS)
        ws.append(["snap-new", "New", "", "49", "usd", "MONTH", "snap_x", "DRAFT", ""])
        ws.append(["", "Broken", "", "49", "usd", "MONTH", "snap_x", "DRAFT", ""])
        buf = io.BytesIO()
        wb.save(buf)

        response = client.post(
            "/api/admin/plans/import",
            headers=admin_headers,
            files={"file": ("plans.xlsx", buf.getvalue(), "application/octet-stream")},
        )

        assert response.status_code == 200
        report = response.json()
        assert report["created"] == ["snap-new"]
        assert report["errors"][0]["row"] == 3
        assert asyncio.run(services.catalog.get_plan("snap-new")).price_cents == 4900

    def test_import_garbage_is_422(self, client, admin_headers):
        response = client.post(
            "/api/admin/plans/import",
            headers=admin_headers,
            files={"file": ("plans.xlsx", b"nope", "application/octet-stream")},
        )
        assert response.status_code == 422

    def test_archive(self, client, services, admin_headers):
        _seed_plan(services)

        response = client.post("/api/admin/plans/snap-starter/archive", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "ARCHIVED"
        assert client.get("/api/snapshots").json()["total"] == 0

    def test_archive_unknown(self, client, admin_headers):
        assert client.post("/api/admin/plans/ghost/archive", headers=admin_headers).status_code == 404


class TestAdminJobs:

    def _enqueue(self, client, services):
        _seed_plan(services)
        client.post("/api/webhook/stripe", content=_checkout_payload())
        return job_id_for_event(CHECKOUT_SESSION_ID)

    def test_run_job_and_read_audit(self, client, services, admin_headers):
        job_id = self._enqueue(client, services)

        run = client.post(f"/api/admin/jobs/{job_id}/run", headers=admin_headers)
        assert run.status_code == 200
        assert run.json()["state"] == JobState.SUCCEEDED.value

        detail = client.get(f"/api/admin/jobs/{job_id}", headers=admin_headers).json()
        assert detail["job"]["sub_account_id"] == "loc_1"
        assert detail["tenant"]["tenant_id"] == "loc_1"

        audit = client.get(f"/api/admin/jobs/{job_id}/audit", headers=admin_headers).json()
        assert [e["transition"] for e in audit["entries"]] == [
            "PROVISIONING->TEMPLATE_APPLYING",
            "TEMPLATE_APPLYING->SUCCEEDED",
        ]
        assert audit["replay"]["state"] == JobState.SUCCEEDED.value

    def test_list_jobs_by_state(self, client, services, admin_headers):
        self._enqueue(client, services)

        pending = client.get("/api/admin/jobs?state=PENDING", headers=admin_headers).json()
        dead = client.get("/api/admin/jobs?state=DEAD", headers=admin_headers).json()

        assert pending["total"] == 1
        assert dead["total"] == 0

    def test_retry_dead_job(self, client, services, crm, admin_headers):
        job_id = self._enqueue(client, services)
        crm.apply_errors["snapshot_a"] = [AdapterPermanent("INVALID_SNAPSHOT")]
        client.post(f"/api/admin/jobs/{job_id}/run", headers=admin_headers)

        response = client.post(f"/api/admin/jobs/{job_id}/retry", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["state"] == JobState.PENDING.value
        entries = client.get(f"/api/admin/jobs/{job_id}/audit", headers=admin_headers).json()["entries"]
        assert entries[-1]["detail"]["operator"] == "admin@example.com"

    def test_retry_non_dead_is_conflict(self, client, services, admin_headers):
        job_id = self._enqueue(client, services)
        response = client.post(f"/api/admin/jobs/{job_id}/retry", headers=admin_headers)
        assert response.status_code == 409

    def test_unknown_job_is_404(self, client, admin_headers):
        assert client.get("/api/admin/jobs/missing", headers=admin_headers).status_code == 404
        assert client.get("/api/admin/jobs/missing/audit", headers=admin_headers).status_code == 404
        assert client.post("/api/admin/jobs/missing/run", headers=admin_headers).status_code == 404
        assert client.post("/api/admin/jobs/missing/retry", headers=admin_headers).status_code == 404
