#!/usr/bin/env python3
"""
Smoke checks against a running gateway.

Run with: python -m coderunner.tests.live.smoke
Gateway URL comes from CODERUNNER_GATEWAY_URL (default http://localhost:8080).
Needs at least one worker node with docker access.
"""
import sys

from .harness import GATEWAY_URL, Colors, SmokeRunner


def run_checks(runner: SmokeRunner):
    runner.print_header("EXECUTION")
    runner.check_code("python hello", "python", 'print("hi")', 200, expected_text="hi\n")
    runner.check_code("javascript hello", "javascript", 'console.log("hi")', 200, expected_text="hi\n")
    runner.check_code("ruby hello", "ruby", 'puts "hi"', 200, expected_text="hi\n")
    runner.check_code("stderr is output", "python", "raise SystemExit('bye')", 200, contains="bye")
    runner.check_code("unsupported language", "cobol", "DISPLAY 'HI'.", 400,
                      expected_text="unsupported language: cobol")

    runner.print_header("LIMITS")
    runner.check_code("infinite loop", "python", "while True: pass", 422, contains="timeout")
    runner.check_code("memory hog", "python", "x = bytearray(512 * 1024 * 1024)", 422, contains="memory")
    runner.check_code("output flood", "python", "while True: print('x' * 1000)", 422,
                      expected_text="output too large")
    runner.check_code("no network", "python",
                      "import urllib.request\nurllib.request.urlopen('http://example.com', timeout=1)",
                      200, contains="Error")


def print_summary(runner: SmokeRunner):
    total = len(runner.results)
    passed = sum(1 for r in runner.results if r.passed)
    failed = total - passed

    runner.print_header("SUMMARY")
    print(f"  Total Checks: {total}")
    print(f"  {Colors.GREEN}Passed:       {passed}{Colors.RESET}")
    print(f"  {Colors.RED}Failed:       {failed}{Colors.RESET}")
    if failed > 0:
        print(f"\n{Colors.RED}Failed Checks:{Colors.RESET}")
        for result in runner.results:
            if not result.passed:
                print(f"  - {result.name}")
    print()


def main():
    runner = SmokeRunner(GATEWAY_URL)

    print(f"{Colors.YELLOW}Checking gateway at {GATEWAY_URL}...{Colors.RESET}")
    status, data = runner.get("/health")
    if status != 200:
        print(f"\n{Colors.RED}ERROR: gateway not healthy: {data}{Colors.RESET}\n")
        sys.exit(1)
    if not data.get("worker_pools"):
        print(f"{Colors.YELLOW}Warning: gateway knows no worker pools yet{Colors.RESET}")

    try:
        run_checks(runner)
    finally:
        runner.close()

    print_summary(runner)
    sys.exit(0 if all(r.passed for r in runner.results) else 1)


if __name__ == "__main__":
    main()
