import os
import random

from locust import HttpUser, between, task

ADMIN_USERNAME = os.getenv("LOCUST_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("LOCUST_PASSWORD", "admin123")


class BoardUser(HttpUser):
    wait_time = between(0.1, 0.5)

    def on_start(self):
        # Log in once per simulated client; the seeded admin can do everything
        r = self.client.post("/api/auth/login", json={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD})
        self.headers = {"Authorization": f"Bearer {r.json()['token']}"} if r.status_code == 200 else None
        self.stage_ids = []
        if self.headers:
            stages = self.client.get("/api/stages", headers=self.headers)
            self.stage_ids = [s["id"] for s in stages.json()]

    @task(2)
    def create_order(self):
        if not self.headers or not self.stage_ids:
            return
        self.client.post("/api/orders", headers=self.headers, json={
            "client_name": f"client_{random.randint(1, 1_000_000)}",
            "description": "load test order",
            "received_date": "2024-01-01",
            "due_date": "2024-02-01",
            "stage_id": random.choice(self.stage_ids),
            "priority": random.randint(0, 3),
        })

    @task(3)
    def move_order(self):
        if not self.headers or not self.stage_ids:
            return
        orders = self.client.get("/api/orders", headers=self.headers).json()
        if not orders:
            return
        order = random.choice(orders)
        self.client.put(
            f"/api/orders/{order['id']}/move",
            headers=self.headers,
            json={"stage_id": random.choice(self.stage_ids), "workman_id": order["workman_id"], "priority": order["priority"]},
            name="/api/orders/[id]/move",
        )

    @task(5)
    def view_board(self):
        if not self.headers:
            return
        self.client.get("/api/board", headers=self.headers)
