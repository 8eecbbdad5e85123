#!/usr/bin/env python3
"""
Order pipeline - E2E smoke run against a deployed stack.

Run:
  python e2e_smoke.py

Needs the consumer started with SIMULATE_FAILURE_QUANTITY set (default 999
here) so the exhausted-retry scenario has an order that always fails.

Optional env:
  ORDER_BASE=http://localhost:3000
  FAILING_QUANTITY=999
  MAX_RETRIES=3
  TIMEOUT_SECONDS=60
  POLL_INTERVAL=1
  DEBUG=1
"""

from __future__ import annotations

import os
import sys
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

import requests


# =========================
# Simple CLI UI (ANSI)
# =========================

class Style:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


def section_title(text: str):
    print(f"\n{Style.BLUE}{Style.BOLD}== {text} =={Style.RESET}")


def info(msg: str):
    print(f"{Style.CYAN}ℹ {msg}{Style.RESET}")


def ok(msg: str):
    print(f"{Style.GREEN}✔ {msg}{Style.RESET}")


def fail(msg: str):
    print(f"{Style.RED}✘ {msg}{Style.RESET}")


# =========================
# Config
# =========================

ORDER_BASE = os.getenv("ORDER_BASE", "http://localhost:3000")
FAILING_QUANTITY = int(os.getenv("FAILING_QUANTITY", "999"))
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))

# 1 attempt + MAX_RETRIES retries, each retry waiting out the 5s TTL.
TIMEOUT_SECONDS = int(os.getenv("TIMEOUT_SECONDS", "60"))
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "1"))
DEBUG = os.getenv("DEBUG", "0").strip() in {"1", "true", "True", "YES", "yes"}

TERMINAL_STATUSES: Set[str] = {"COMPLETED", "FAILED"}


def debug(msg: str):
    if DEBUG:
        print(f"{Style.GRAY}… {msg}{Style.RESET}")


@dataclass
class TestResult:
    name: str
    success: bool
    details: str = ""


# =========================
# HTTP helpers
# =========================

def http(method: str, url: str, **kwargs) -> requests.Response:
    kwargs.setdefault("timeout", 8)
    debug(f"{method} {url} kwargs={kwargs}")
    return requests.request(method, url, **kwargs)


def wait_for_health(timeout: int = 30) -> bool:
    start = time.time()
    while time.time() - start < timeout:
        try:
            if http("GET", f"{ORDER_BASE}/health").status_code == 200:
                ok("order_service is healthy.")
                return True
        except requests.exceptions.RequestException as e:
            debug(f"order_service not ready: {e}")
        time.sleep(1)
    fail(f"order_service did not become healthy in {timeout} seconds.")
    return False


def submit_order(quantity: int) -> Optional[str]:
    payload = {"userId": "smoke-user", "productId": "P-1001", "quantity": quantity}
    resp = http("POST", f"{ORDER_BASE}/api/orders", json=payload)
    if resp.status_code != 202:
        fail(f"Unexpected status {resp.status_code}: {resp.text}")
        return None
    order_id = resp.json().get("orderId")
    info(f"Submitted order {order_id} (quantity={quantity})")
    return order_id


def wait_for_terminal_status(order_id: str) -> Dict[str, Any]:
    start = time.time()
    last: Dict[str, Any] = {}
    while time.time() - start < TIMEOUT_SECONDS:
        try:
            resp = http("GET", f"{ORDER_BASE}/api/orders/{order_id}")
            if resp.status_code == 200:
                order = resp.json()
                if order.get("status") != last.get("status") or order.get("retry_count") != last.get("retry_count"):
                    print(f"    {Style.GRAY}status={order.get('status')} retry_count={order.get('retry_count')}{Style.RESET}")
                last = order
                if order.get("status") in TERMINAL_STATUSES:
                    return order
        except requests.exceptions.RequestException as e:
            debug(f"Order poll error: {e}")
        time.sleep(POLL_INTERVAL)
    return last


# =========================
# Scenarios
# =========================

def scenario_happy_path() -> TestResult:
    section_title("Scenario 1 - Order completes")
    order_id = submit_order(quantity=2)
    if order_id is None:
        return TestResult("Happy path", False, "Order was not accepted")

    order = wait_for_terminal_status(order_id)
    success = order.get("status") == "COMPLETED" and order.get("retry_count") == 0
    msg = f"Expected COMPLETED with retry_count 0, got {order}"
    (ok if success else fail)(msg)
    return TestResult("Happy path", success, msg)


def scenario_exhausted_retries() -> TestResult:
    section_title("Scenario 2 - Order fails after retries")
    order_id = submit_order(quantity=FAILING_QUANTITY)
    if order_id is None:
        return TestResult("Exhausted retries", False, "Order was not accepted")

    order = wait_for_terminal_status(order_id)
    success = order.get("status") == "FAILED" and order.get("retry_count") == MAX_RETRIES
    msg = f"Expected FAILED with retry_count {MAX_RETRIES}, got {order}"
    (ok if success else fail)(msg)
    return TestResult("Exhausted retries", success, msg)


def scenario_invalid_input() -> TestResult:
    section_title("Scenario 3 - Invalid input is rejected")
    resp = http("POST", f"{ORDER_BASE}/api/orders", json={"userId": "smoke-user", "productId": "P-1001", "quantity": -5})
    success = resp.status_code == 400
    msg = f"Expected HTTP 400, got {resp.status_code}: {resp.text}"
    (ok if success else fail)(msg)
    return TestResult("Invalid input", success, msg)


def print_results(results: List[TestResult]) -> int:
    print(f"\n{Style.BOLD}================ RESULTS ================{Style.RESET}")
    for r in results:
        color = Style.GREEN if r.success else Style.RED
        print(f"{color}{'PASS' if r.success else 'FAIL'} {r.name}{Style.RESET}")
        if r.details:
            print(f"    {Style.DIM}{r.details}{Style.RESET}")

    failed = sum(1 for r in results if not r.success)
    print(f"Total: {len(results)}  |  Failed: {failed}")
    if failed:
        print(f"{Style.YELLOW}- If orders stay PENDING: the consumer may not be running, or the topology is missing.{Style.RESET}")
        print(f"{Style.YELLOW}- Inspect parked orders: python -m consumer_service.app.inspect_failed{Style.RESET}")
    return failed


def main():
    if not wait_for_health():
        sys.exit(1)

    results = [
        scenario_happy_path(),
        scenario_exhausted_retries(),
        scenario_invalid_input(),
    ]
    sys.exit(1 if print_results(results) else 0)


if __name__ == "__main__":
    main()
