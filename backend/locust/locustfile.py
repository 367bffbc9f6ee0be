"""
Locust Load Test Suite

The booking API does not create users, events or ticket types, so the
scenarios run against rows seeded beforehand:

  LOCUST_EVENT_ID          event to book (default 1)
  LOCUST_TICKET_TYPE_ID    ticket type with limited stock (default 1)
  LOCUST_USER_IDS          comma separated user ids to act as (default 1..50)

Tokens are minted locally with SECRET_KEY, and webhooks are signed with
PAYMOB_HMAC_SECRET, so both must match the server's settings. Run the server
with PAYMENT_GATEWAY=offline so no traffic reaches Paymob.

Run scenarios:
  locust -f locustfile.py --tags concurrency  # Test overselling
  locust -f locustfile.py --tags throughput   # Test availability cache
  locust -f locustfile.py --tags webhook      # Test webhook idempotency
  locust -f locustfile.py --tags edge         # Test bad input
  locust -f locustfile.py                     # All tests
"""

import os
import random
from datetime import datetime, timezone

from locust import HttpUser, task, between, tag, events

from app.core.security import create_access_token
from app.services.interfaces.payment_gateway import compute_webhook_hmac

EVENT_ID = int(os.environ.get("LOCUST_EVENT_ID", "1"))
TICKET_TYPE_ID = int(os.environ.get("LOCUST_TICKET_TYPE_ID", "1"))
USER_IDS = [
    int(user_id)
    for user_id in os.environ.get("LOCUST_USER_IDS", ",".join(str(i) for i in range(1, 51))).split(",")
]
HMAC_SECRET = os.environ.get("PAYMOB_HMAC_SECRET", "change-me-hmac-secret")

# Bookings that got a gateway order, shared with the webhook users
PENDING_ORDERS = []


def auth_headers() -> dict:
    token = create_access_token(data={"sub": str(random.choice(USER_IDS))})
    return {"Authorization": f"Bearer {token}"}


def booking_payload(quantity: int = 1) -> dict:
    return {"event_id": EVENT_ID, "ticket_type_id": TICKET_TYPE_ID, "quantity": quantity}


def signed_transaction(order: dict, success: bool) -> tuple[dict, str]:
    transaction = {
        "id": random.randint(1, 10_000_000),
        "pending": False,
        "success": success,
        "amount_cents": order["amount_cents"],
        "currency": order["currency"],
        "created_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f"),
        "order": {"id": order["order_id"]},
    }
    return transaction, compute_webhook_hmac(transaction, HMAC_SECRET)


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print(f"Booking event {EVENT_ID}, ticket type {TICKET_TYPE_ID}, as {len(USER_IDS)} users")
    print("=" * 60)


class ConcurrencyUser(HttpUser):
    """
    TEST 1: Concurrency - many buyers, limited stock

    Run: locust -f locustfile.py --tags concurrency -u 100 -r 50 --run-time 30s

    After test, verify no overselling:
      SELECT total_quantity - available_quantity FROM ticket_types WHERE id = X;
      SELECT SUM(quantity) FROM bookings
        WHERE ticket_type_id = X AND inventory_released = false;
    Both numbers must match.
    """
    wait_time = between(0, 0.1)

    def on_start(self):
        self.headers = auth_headers()

    @tag("concurrency")
    @task
    def book_limited_tickets(self):
        with self.client.post("/api/v1/bookings/",
            json=booking_payload(),
            headers=self.headers,
            catch_response=True
        ) as resp:
            if resp.status_code == 201:
                data = resp.json()
                PENDING_ORDERS.append({
                    "order_id": data["payment"]["order_id"],
                    "amount_cents": data["booking"]["total_price_cents"],
                    "currency": data["booking"]["currency"],
                })
                resp.success()
            elif resp.status_code in (409, 503):
                resp.success()  # Expected: sold out or contention
            else:
                resp.failure(f"Unexpected: {resp.status_code}")


class ThroughputUser(HttpUser):
    """
    TEST 2: Throughput - Availability cache effectiveness

    Run twice:
      1. With Redis: locust -f locustfile.py --tags throughput -u 100 -r 20 --run-time 60s
      2. Without Redis: REDIS_ENABLED=false on the server, run again

    Compare:
      - Avg response time
      - Requests/sec
      - P95/P99 latency
    """
    wait_time = between(0.1, 0.5)

    @tag("throughput", "read")
    @task(10)
    def ticket_availability(self):
        self.client.get(f"/api/v1/tickets/{TICKET_TYPE_ID}",
            name="/api/v1/tickets/{id} [cached]")

    @tag("throughput")
    @task(1)
    def health_check(self):
        self.client.get("/health")


class WebhookUser(HttpUser):
    """
    TEST 3: Webhooks - duplicate and out-of-order callbacks

    Run alongside ConcurrencyUser:
      locust -f locustfile.py --tags concurrency webhook -u 120 -r 40 --run-time 60s

    Every order gets its callback delivered several times, sometimes a
    failure after the success. Afterwards no confirmed booking may have
    payment_status other than completed.
    """
    wait_time = between(0.1, 0.3)

    @tag("webhook")
    @task
    def deliver_webhook(self):
        if not PENDING_ORDERS:
            return
        order = random.choice(PENDING_ORDERS)
        transaction, signature = signed_transaction(order, success=random.random() < 0.8)

        with self.client.post("/api/v1/payments/webhook",
            json={"type": "TRANSACTION", "obj": transaction},
            params={"hmac": signature},
            name="/api/v1/payments/webhook",
            catch_response=True
        ) as resp:
            if resp.status_code == 200:
                resp.success()
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @tag("webhook", "edge")
    @task
    def forged_webhook(self):
        """A bad signature must never be accepted."""
        if not PENDING_ORDERS:
            return
        transaction, _ = signed_transaction(random.choice(PENDING_ORDERS), success=True)

        with self.client.post("/api/v1/payments/webhook",
            json=transaction,
            params={"hmac": "0" * 128},
            name="/api/v1/payments/webhook [forged]",
            catch_response=True
        ) as resp:
            if resp.status_code == 400:
                resp.success()
            else:
                resp.failure(f"Expected 400, got {resp.status_code}")


class EdgeCaseUser(HttpUser):
    """
    TEST 4: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """
    wait_time = between(0.5, 1.5)

    def on_start(self):
        self.headers = auth_headers()

    def _expect(self, payload, allowed, headers=None):
        with self.client.post("/api/v1/bookings/",
            json=payload,
            headers=self.headers if headers is None else headers,
            catch_response=True
        ) as resp:
            if resp.status_code in allowed:
                resp.success()
            else:
                resp.failure(f"Expected {allowed}, got {resp.status_code}")

    @tag("edge")
    @task
    def invalid_event_id(self):
        self._expect({**booking_payload(), "event_id": 999999}, [404, 400])

    @tag("edge")
    @task
    def invalid_ticket_type(self):
        self._expect({**booking_payload(), "ticket_type_id": 999999}, [404, 400])

    @tag("edge")
    @task
    def negative_quantity(self):
        self._expect(booking_payload(-5), [400, 422])

    @tag("edge")
    @task
    def too_many_tickets(self):
        self._expect(booking_payload(999999), [400, 409, 422])

    @tag("edge")
    @task
    def malformed_json(self):
        with self.client.post("/api/v1/bookings/",
            data="not json at all",
            headers=self.headers,
            catch_response=True
        ) as resp:
            if resp.status_code in [400, 422]:
                resp.success()
            else:
                resp.failure(f"Expected 400/422, got {resp.status_code}")

    @tag("edge")
    @task
    def missing_auth(self):
        self._expect(booking_payload(), [401], headers={})


class RealisticUser(HttpUser):
    """
    TEST 5: Realistic mixed workload

    Run: locust -f locustfile.py -u 200 -r 20 --run-time 120s

    Simulates real traffic:
      - Mostly checking availability
      - Some bookings, a few of them cancelled
      - Status polling while paying
    """
    wait_time = between(1, 3)

    def on_start(self):
        self.headers = auth_headers()
        self.booking_codes = []

    @task(50)
    def check_availability(self):
        self.client.get(f"/api/v1/tickets/{TICKET_TYPE_ID}", name="/api/v1/tickets/{id}")

    @task(10)
    def book_tickets(self):
        resp = self.client.post("/api/v1/bookings/",
            json=booking_payload(random.randint(1, 3)),
            headers=self.headers)
        if resp.status_code == 201:
            self.booking_codes.append(resp.json()["booking"]["booking_code"])

    @task(10)
    def poll_payment_status(self):
        if self.booking_codes:
            self.client.get(f"/api/v1/payments/{random.choice(self.booking_codes)}/status",
                headers=self.headers, name="/api/v1/payments/{code}/status")

    @task(5)
    def list_my_bookings(self):
        self.client.get("/api/v1/bookings/", headers=self.headers)

    @task(2)
    def cancel_booking(self):
        if self.booking_codes:
            code = self.booking_codes.pop()
            self.client.post(f"/api/v1/bookings/{code}/cancel",
                headers=self.headers, name="/api/v1/bookings/{code}/cancel")
