#!/usr/bin/env python3
"""
Locust load tests for the EdgeGuard proxy.

Usage:
    locust -f performance/locustfile.py --host=http://localhost:8080

Mixes ordinary browsing traffic with attack payloads so that the cost of
WAF analysis and rate limiting shows up in the latency figures.
"""

import os
import random

from locust import HttpUser, task, between, events


METRICS_URL = os.getenv('METRICS_URL', 'http://localhost:9090/metrics')

ATTACK_PAYLOADS = [
    "/search?q=1%20UNION%20SELECT%20password%20FROM%20users",
    "/search?q=%3Cscript%3Ealert(1)%3C%2Fscript%3E",
    "/files?name=..%2F..%2Fetc%2Fpasswd",
    "/run?cmd=%60id%60",
]


def random_client_ip() -> str:
    """Spread load over many client addresses so rate limits stay per-user."""
    return f"198.51.100.{random.randint(1, 254)}"


class BrowsingUser(HttpUser):
    """Ordinary traffic that should pass every stage."""

    wait_time = between(0.5, 2)
    weight = 8

    def on_start(self):
        self.client_ip = random_client_ip()
        self.client.headers.update({
            'CF-Connecting-IP': self.client_ip,
            'User-Agent': 'Mozilla/5.0 (X11; Linux x86_64) Firefox/120.0',
        })

    @task(10)
    def index(self):
        self.client.get("/")

    @task(5)
    def api_read(self):
        self.client.get(f"/api/items/{random.randint(1, 500)}", name="/api/items/[id]")

    @task(2)
    def api_write(self):
        self.client.post("/api/items", json={'name': 'widget', 'qty': random.randint(1, 9)})

    @task(1)
    def dashboard(self):
        self.client.get("/monitoring/security")


class AttackerUser(HttpUser):
    """Hostile traffic; every request is expected to be blocked."""

    wait_time = between(1, 3)
    weight = 1

    def on_start(self):
        self.client.headers.update({'CF-Connecting-IP': f"192.0.2.{random.randint(1, 254)}"})

    @task
    def attack(self):
        path = random.choice(ATTACK_PAYLOADS)
        with self.client.get(path, name="attack", catch_response=True) as response:
            if response.status_code == 403:
                response.success()
            else:
                response.failure(f"Attack not blocked: {response.status_code}")


class MetricsUser(HttpUser):
    """Periodically scrapes the Prometheus exporter."""

    wait_time = between(5, 10)
    weight = 1

    @task
    def scrape(self):
        with self.client.get(METRICS_URL, name="/metrics", catch_response=True) as response:
            if response.status_code == 200 and 'edgeguard_' in response.text:
                response.success()
            else:
                response.failure(f"Metrics endpoint returned {response.status_code}")


@events.quitting.add_listener
def on_quit(environment, **kwargs):
    """Print summary on quit."""
    stats = environment.stats
    print("\n" + "=" * 60)
    print("EdgeGuard Load Test Summary")
    print("=" * 60)
    print(f"Total Requests: {stats.total.num_requests}")
    print(f"Total Failures: {stats.total.num_failures}")
    print(f"Requests/sec: {stats.total.total_rps:.2f}")
    print(f"Avg Response Time: {stats.total.avg_response_time:.2f}ms")
    print(f"95th percentile: {stats.total.get_response_time_percentile(0.95):.2f}ms")
    print("=" * 60)
