#!/usr/bin/env python3
"""
Live smoke test for the Billing API.

Runs a bill through its whole life against a running backend:
create -> edit -> pay -> dashboard -> cancel, checking stock and money
serialization on the way.

Environment:
- BILLING_BACKEND_URL   (default http://localhost:8001)
- JWT_SECRET_KEY        must match the backend, used to mint an Admin token
- SMOKE_CUSTOMER_ID     an existing customer id

Products are taken from GET /api/billing/products/stock.
"""

import asyncio
import aiohttp
import jwt
import os
from datetime import datetime, timedelta
from typing import Dict, Any, Optional

BACKEND_URL = os.environ.get('BILLING_BACKEND_URL', 'http://localhost:8001')
API_BASE = f"{BACKEND_URL}/api/billing"
SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "your-secret-key-change-in-production-2024")
CUSTOMER_ID = os.environ.get("SMOKE_CUSTOMER_ID", "")


def mint_token(role: str = "Admin") -> str:
    payload = {
        "user_id": "smoke-test",
        "role": role,
        "type": "access",
        "exp": datetime.utcnow() + timedelta(minutes=10),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm="HS256")


class BackendTester:
    def __init__(self):
        self.session = None
        self.auth_token = mint_token()
        self.test_results = []

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()

    def log_result(self, test_name: str, success: bool, details: str):
        self.test_results.append({
            "test": test_name,
            "success": success,
            "details": details,
            "timestamp": datetime.utcnow().isoformat(),
        })
        status = "PASS" if success else "FAIL"
        print(f"[{status}] {test_name}: {details}")

    def get_headers(self):
        return {"Authorization": f"Bearer {self.auth_token}"}

    async def call(self, method: str, endpoint: str, test_name: str,
                   expected_status: int = 200, data: Dict = None) -> Optional[Any]:
        """Issue one request; log and return the JSON body when the status matches"""
        url = f"{API_BASE}{endpoint}"
        try:
            async with self.session.request(method, url, headers=self.get_headers(), json=data) as response:
                body = await response.json(content_type=None)
                if response.status != expected_status:
                    self.log_result(test_name, False,
                                    f"Unexpected status {response.status} (expected {expected_status}): {body}")
                    return None
                problem = self._find_unserialized_money(body)
                if problem:
                    self.log_result(test_name, False, problem)
                    return None
                self.log_result(test_name, True, f"Status {response.status}")
                return body
        except aiohttp.ClientError as e:
            self.log_result(test_name, False, f"Request error: {str(e)}")
            return None

    def _find_unserialized_money(self, data: Any, path: str = "root") -> Optional[str]:
        """Money must reach the client as JSON numbers, never Decimal128 wrappers or strings"""
        money_fields = ("amount", "total", "price", "cgst", "sgst", "igst", "balance")
        if isinstance(data, dict):
            for key, value in data.items():
                if isinstance(value, dict) and "$numberDecimal" in value:
                    return f"Unserialized Decimal128 at {path}.{key}"
                if any(f in key.lower() for f in money_fields) and not key.endswith("_id"):
                    if not isinstance(value, (int, float, type(None))):
                        return f"Money field {path}.{key} is {type(value).__name__}: {value!r}"
                if isinstance(value, (dict, list)):
                    found = self._find_unserialized_money(value, f"{path}.{key}")
                    if found:
                        return found
        elif isinstance(data, list):
            for i, item in enumerate(data):
                found = self._find_unserialized_money(item, f"{path}[{i}]")
                if found:
                    return found
        return None

    async def stock_of(self, product_id: str) -> Optional[int]:
        async with self.session.get(f"{API_BASE}/products/stock", headers=self.get_headers()) as response:
            products = await response.json()
        for product in products:
            if product["product_id"] == product_id:
                return product["stock"]
        return None

    async def run_bill_lifecycle(self):
        print("Starting Billing API smoke test")
        print("=" * 60)

        if not CUSTOMER_ID:
            self.log_result("Setup", False, "SMOKE_CUSTOMER_ID is not set")
            return

        await self.call("GET", "/health", "Health Check")

        products = await self.call("GET", "/products/stock", "Stock List") or []
        product = next((p for p in products if p["stock"] >= 3), None)
        if product is None:
            self.log_result("Setup", False, "No product with at least 3 units in stock")
            return
        product_id = product["product_id"]
        starting_stock = product["stock"]

        bill = await self.call("POST", "/bills", "Create Bill", 201, {
            "customer_id": CUSTOMER_ID,
            "lines": [{"product_id": product_id, "quantity": 3}],
        })
        if not bill:
            return
        invoice_id = bill["invoice_id"]
        stock = await self.stock_of(product_id)
        self.log_result("Stock Decrement", stock == starting_stock - 3,
                        f"{starting_stock} -> {stock}")

        edited = await self.call("PUT", f"/bills/{invoice_id}", "Edit Bill", 200, {
            "customer_id": CUSTOMER_ID,
            "previous_lines": [{"product_id": product_id, "quantity": 3}],
            "lines": [{"product_id": product_id, "quantity": 1}],
            "expected_version": bill["version"],
        })
        if edited:
            stock = await self.stock_of(product_id)
            self.log_result("Stock Delta On Edit", stock == starting_stock - 1,
                            f"{starting_stock} -> {stock}")
            self.log_result("Invoice Number Preserved",
                            edited["invoice_number"] == bill["invoice_number"],
                            edited["invoice_number"])

        await self.call("POST", "/bills", "Oversell Rejected", 409, {
            "customer_id": CUSTOMER_ID,
            "lines": [{"product_id": product_id, "quantity": starting_stock + 1}],
        })

        total = (edited or bill)["grand_total"]
        await self.call("POST", "/payments", "Record Payment", 201, {
            "related_invoice_id": invoice_id,
            "amount_paid": str(total),
        })
        detail = await self.call("GET", f"/bills/{invoice_id}", "Bill Detail")
        if detail:
            self.log_result("Derived Status", detail["effective_status"] == "Paid",
                            f"effective_status={detail['effective_status']} remaining={detail['remaining_balance']}")

        await self.call("GET", "/dashboard/metrics", "Dashboard Metrics")
        await self.call("DELETE", f"/bills/{invoice_id}", "Delete Forbidden", 403)

        # Paid bills can only be cancelled with an Admin override
        await self.call("POST", f"/bills/{invoice_id}/cancel?manual_override=true", "Cancel Bill")
        stock = await self.stock_of(product_id)
        self.log_result("Restock On Cancel", stock == starting_stock, f"{starting_stock} -> {stock}")

        # Daily ledger: purchase two in, sell two out
        for entry_type, expected in (("purchase", starting_stock + 2), ("sale", starting_stock)):
            await self.call("POST", "/ledger", f"Ledger {entry_type.title()}", 201, {
                "type": entry_type,
                "entity_type": "seller" if entry_type == "purchase" else "unknown_customer",
                "entity_name": "Smoke Test Supplier" if entry_type == "purchase" else None,
                "items": [{"product_id": product_id, "quantity": 2}]
            })
            stock = await self.stock_of(product_id)
            self.log_result(f"Stock After Ledger {entry_type.title()}", stock == expected,
                            f"expected {expected}, got {stock}")
        await self.call("GET", "/ledger", "Ledger List")

        print()
        print("=" * 60)
        self.print_summary()

    def print_summary(self):
        total_tests = len(self.test_results)
        passed_tests = sum(1 for result in self.test_results if result["success"])
        failed_tests = total_tests - passed_tests

        print("TEST SUMMARY")
        print(f"Total Tests: {total_tests}")
        print(f"Passed: {passed_tests}")
        print(f"Failed: {failed_tests}")

        if failed_tests > 0:
            print("\nFAILED TESTS:")
            for result in self.test_results:
                if not result["success"]:
                    print(f"  - {result['test']}: {result['details']}")


async def main():
    print(f"Backend URL: {BACKEND_URL}")
    print(f"API Base: {API_BASE}")
    print()

    async with BackendTester() as tester:
        await tester.run_bill_lifecycle()


if __name__ == "__main__":
    asyncio.run(main())
