"""Integration tests for API endpoints"""

from datetime import datetime, timezone

from fastapi.testclient import TestClient


def test_health_endpoint(client: TestClient):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint(client: TestClient):
    """Test Prometheus metrics endpoint"""
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "bnpl_installment_charge_total" in response.text


def test_request_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_create_schedule(client: TestClient, make_transaction, gateway):
    """Test POST /v1/transactions/{id}/schedule"""
    transaction_id = make_transaction(amount_cents=30000)

    response = client.post(f"/v1/transactions/{transaction_id}/schedule", json={})

    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    assert data["installment_count"] == 3
    assert [i["due_date"] for i in data["installments"]] == ["2024-01-01", "2024-01-15", "2024-01-29"]
    assert [i["status"] for i in data["installments"]] == ["processing", "scheduled", "scheduled"]
    assert data["first_capture"]["outcome"] == "completed"
    assert gateway.charges[0]["amount_cents"] == 10000
    assert gateway.charges[0]["metadata"]["installment_number"] == 1


def test_schedule_without_first_capture_collected_by_batch(client: TestClient, make_transaction, clock, gateway):
    transaction_id = make_transaction(amount_cents=30000)

    response = client.post(f"/v1/transactions/{transaction_id}/schedule", json={"capture_first": False})

    assert response.status_code == 201
    assert response.json()["first_capture"] is None
    assert gateway.charges == []

    clock.set(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))
    assert client.post("/v1/batch/run", json={}).json()["succeeded"] == 2
    assert sorted(c["metadata"]["installment_number"] for c in gateway.charges) == [1, 2]


def test_create_schedule_errors(client: TestClient, make_transaction):
    transaction_id = make_transaction()
    assert client.post(f"/v1/transactions/{transaction_id}/schedule", json={}).status_code == 201

    duplicate = client.post(f"/v1/transactions/{transaction_id}/schedule", json={})
    assert duplicate.status_code == 409

    unknown = client.post("/v1/transactions/6f1c1b0e-0000-4000-8000-000000000000/schedule", json={})
    assert unknown.status_code == 404

    too_small = make_transaction(amount_cents=500)
    assert client.post(f"/v1/transactions/{too_small}/schedule", json={}).status_code == 422


def test_invalid_interval_rejected(client: TestClient, make_transaction):
    transaction_id = make_transaction()

    response = client.post(f"/v1/transactions/{transaction_id}/schedule", json={"interval": "hourly"})

    assert response.status_code == 422


def test_schedule_summary_and_inspection(client: TestClient, make_transaction):
    transaction_id = make_transaction(amount_cents=30000)
    client.post(f"/v1/transactions/{transaction_id}/schedule", json={})

    summary = client.get(f"/v1/transactions/{transaction_id}/schedule")
    assert summary.status_code == 200
    assert summary.json()["remaining_amount_cents"] == 20000
    assert summary.json()["next_installment"]["installment_number"] == 2

    inspection = client.get(f"/v1/transactions/{transaction_id}/schedule/inspection")
    assert inspection.status_code == 200
    assert inspection.json()["healthy"] is True


def test_schedule_summary_not_found(client: TestClient, make_transaction):
    transaction_id = make_transaction()
    assert client.get(f"/v1/transactions/{transaction_id}/schedule").status_code == 404


def test_repair_endpoint(client: TestClient, make_transaction):
    transaction_id = make_transaction(amount_cents=30000)
    client.post(f"/v1/transactions/{transaction_id}/schedule", json={})

    response = client.post(
        f"/v1/transactions/{transaction_id}/schedule/repair", json={"actor": "ops", "reason": "customer request"}
    )

    assert response.status_code == 200
    assert response.json()["total_amount_cents"] == 30000
    assert [i["status"] for i in response.json()["installments"]] == ["completed", "scheduled", "scheduled"]


def test_batch_run_and_stats(client: TestClient, make_transaction, clock, gateway):
    transaction_id = make_transaction(amount_cents=30000)
    client.post(f"/v1/transactions/{transaction_id}/schedule", json={})
    clock.set(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))

    response = client.post("/v1/batch/run", json={})

    assert response.status_code == 200
    assert response.json()["succeeded"] == 1
    assert response.json()["errored"] == 0
    assert len(gateway.charges) == 2

    stats = client.get("/v1/batch/stats").json()
    assert stats["scheduled_count"] == 1
    assert stats["completed_count"] == 2
    assert stats["processing_count"] == 0


def test_manual_retry_endpoint(client: TestClient, make_transaction, fetch_installments):
    transaction_id = make_transaction()
    client.post(f"/v1/transactions/{transaction_id}/schedule", json={})
    first, second, _ = fetch_installments(transaction_id)

    assert client.post(f"/v1/installments/{first.id}/retry").status_code == 409
    assert client.post("/v1/installments/not-an-id/retry").status_code == 404

    response = client.post(f"/v1/installments/{second.id}/retry")
    assert response.status_code == 200
    assert response.json()["outcome"] == "completed"


def test_early_payment_flow(client: TestClient, make_transaction, clock):
    transaction_id = make_transaction(amount_cents=40000, payment_plan="pay_in_2")
    client.post(f"/v1/transactions/{transaction_id}/schedule", json={})
    assert client.post("/v1/merchants/merchant_1/early-payment/config").status_code == 201
    clock.set(datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc))

    options = client.get(f"/v1/transactions/{transaction_id}/early-payment-options").json()
    assert options["total_discount_cents"] == 400
    assert options["options"][0]["quote"]["time_range"] == "0-7days"

    settled = client.post(f"/v1/transactions/{transaction_id}/early-settlement", json={})
    assert settled.status_code == 200
    assert settled.json()["charged_amount_cents"] == 19600

    analytics = client.get("/v1/merchants/merchant_1/early-payment/analytics").json()
    assert analytics["total_early_payments"] == 1
    assert analytics["most_popular_time_range"] == "0-7days"

    again = client.post(f"/v1/transactions/{transaction_id}/early-settlement", json={})
    assert again.status_code == 409


def test_update_early_payment_config_validation(client: TestClient):
    response = client.put("/v1/merchants/merchant_1/early-payment/config", json={"discount_tiers": []})
    assert response.status_code == 422

    valid = {
        "enabled": True,
        "discount_tiers": [{"time_range": "0-30days", "discount_rate": 0.03, "maximum_discount_cents": 1000}],
    }
    response = client.put("/v1/merchants/merchant_1/early-payment/config", json=valid)
    assert response.status_code == 200
    assert response.json()["config"]["discount_tiers"][0]["discount_rate"] == 0.03
