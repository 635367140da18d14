"""
Helpers for smoke-checking a running cluster over HTTP.
"""
import os
import time
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import httpx

GATEWAY_URL = os.environ.get("CODERUNNER_GATEWAY_URL", "http://localhost:8080")


@dataclass
class CheckResult:
    name: str
    passed: bool
    message: str
    duration: float


class Colors:
    GREEN = "\033[92m"
    RED = "\033[91m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    RESET = "\033[0m"
    BOLD = "\033[1m"


class SmokeRunner:
    def __init__(self, base_url: str = GATEWAY_URL, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout)
        self.results: list[CheckResult] = []

    def print_header(self, title: str):
        print(f"\n{Colors.BOLD}{Colors.BLUE}{'=' * 60}{Colors.RESET}")
        print(f"{Colors.BOLD}{Colors.BLUE}{title:^60}{Colors.RESET}")
        print(f"{Colors.BOLD}{Colors.BLUE}{'=' * 60}{Colors.RESET}\n")

    def print_result(self, result: CheckResult):
        status = f"{Colors.GREEN}✓ PASS{Colors.RESET}" if result.passed else f"{Colors.RED}✗ FAIL{Colors.RESET}"
        print(f"  {status} {result.name} ({result.duration:.3f}s)")
        if not result.passed:
            print(f"       {Colors.YELLOW}{result.message}{Colors.RESET}")

    def add_result(self, name: str, passed: bool, message: str, duration: float):
        result = CheckResult(name, passed, message, duration)
        self.results.append(result)
        self.print_result(result)

    def get(self, endpoint: str) -> Tuple[int, Any]:
        try:
            response = self.client.get(endpoint)
        except httpx.ConnectError:
            return 0, {"error": "Connection refused - is the gateway running?"}
        try:
            return response.status_code, response.json()
        except ValueError:
            return response.status_code, {"raw": response.text}

    def run_code(self, language: str, code: str) -> Tuple[int, str, float]:
        """POST raw code to /<language>; returns (status, body, seconds)."""
        start = time.time()
        try:
            response = self.client.post(f"/{language}", content=code.encode("utf-8"))
        except httpx.HTTPError as e:
            return 0, str(e), time.time() - start
        return response.status_code, response.text, time.time() - start

    def check_code(
        self,
        name: str,
        language: str,
        code: str,
        expected_status: int,
        expected_text: Optional[str] = None,
        contains: Optional[str] = None,
    ):
        status, body, duration = self.run_code(language, code)
        passed = status == expected_status
        if expected_text is not None:
            passed = passed and body == expected_text
        if contains is not None:
            passed = passed and contains in body
        self.add_result(name, passed, f"Status: {status}, Body: {body[:200]!r}", duration)

    def close(self):
        self.client.close()
