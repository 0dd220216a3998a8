"""
End-to-end walkthrough of the notification pipeline against an in-memory store.

This script checks:
1. Configuration loading and validation
2. Bootstrap suppression of existing records
3. Routing of new appointments, chat messages and payment changes
4. Appointment reminders across scan cycles
5. Delivery failures not blocking sibling notifications

No Firebase project or delivery worker is needed: the store is an
InMemoryMutationFeed and the delivery endpoint is an httpx mock transport.

Run with: python system_check.py
"""

import asyncio
import json
import sys
from typing import Any

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from notifier.config import (
    AppConfig,
    ConfigurationError,
    DeliveryConfig,
    FirebaseConfig,
    HealthServerConfig,
    LoggingConfig,
    ReminderConfig,
    config_summary,
    validate_config,
)
from notifier.services.dispatcher import NotificationDispatcher
from notifier.services.mutation_feed import InMemoryMutationFeed
from notifier.services.notification_service import NotificationService
from notifier.services.recipients import RecipientResolver
from notifier.services.reminders import MINUTE_MILLIS

console = Console()

NOW = 1_700_000_000_000
ENDPOINT = "https://delivery.local/send"


def local_config() -> AppConfig:
    return AppConfig(
        environment="development",
        debug=True,
        shutdown_drain_seconds=2.0,
        firebase=FirebaseConfig(service_account={"project_id": "local-check"}),
        delivery=DeliveryConfig(endpoint_url=ENDPOINT),
        reminders=ReminderConfig(scan_interval_seconds=3600.0),
        health=HealthServerConfig(enabled=False),
        logging=LoggingConfig(level="WARNING", format="console"),
    )


def seed_data() -> dict[str, Any]:
    return {
        "users": {
            "doc1": {"oneSignalPlayerId": "player-doc1"},
            "pat1": {"oneSignalPlayerId": "player-pat1"},
            "pat2": {"oneSignalPlayerId": "player-pat2"},
        },
        "appointments": {
            "old": {"doctorId": "doc1", "patientId": "pat1", "timestamp": NOW - 86_400_000},
        },
        "payments": {"pay1": {"patientId": "pat1", "status": "pending"}},
        "chats": {"c1": {"messages": {"m0": {"from": "pat1", "to": "doc1", "text": "old"}}}},
    }


class RecordingEndpoint:
    """Mock delivery worker; fails for the routing ids in ``failing``."""

    def __init__(self, failing: frozenset[str] = frozenset()) -> None:
        self.failing = failing
        self.sent: list[dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if payload.get("playerId") in self.failing:
            return httpx.Response(500, json={"error": "upstream unavailable"})
        self.sent.append(payload)
        return httpx.Response(200, json={"id": f"n{len(self.sent)}"})


def build_service(
    feed: InMemoryMutationFeed, endpoint: RecordingEndpoint, clock: list[int]
) -> NotificationService:
    config = local_config()
    dispatcher = NotificationDispatcher(
        ENDPOINT,
        RecipientResolver(feed),
        client=httpx.AsyncClient(transport=httpx.MockTransport(endpoint)),
    )
    return NotificationService(feed, config, dispatcher=dispatcher, clock=lambda: clock[0])


def print_sent(title: str, sent: list[dict[str, Any]]) -> None:
    table = Table(title=title)
    table.add_column("Player", style="cyan")
    table.add_column("Title", style="magenta")
    table.add_column("Body", style="white")
    for payload in sent:
        table.add_row(payload["playerId"], payload["title"], payload["body"])
    console.print(table)


async def check_configuration() -> bool:
    """Check configuration loading; fall back to the local config if the env is not set."""

    console.print(Panel("🔧 Checking Configuration", style="blue"))

    try:
        config = validate_config()
        console.print("✅ Configuration loaded from environment", style="green")
    except ConfigurationError as e:
        console.print(f"⚠️  Environment not configured ({e})", style="yellow")
        console.print("Using the local configuration for the remaining checks", style="yellow")
        config = local_config()

    table = Table(title="Configuration Summary")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")
    for key, value in config_summary(config).items():
        table.add_row(key, str(value))
    console.print(table)
    return True


async def check_routing() -> bool:
    """Existing records stay silent; new ones notify their recipients."""

    console.print(Panel("📨 Checking Event Routing", style="blue"))

    feed = InMemoryMutationFeed(seed_data())
    endpoint = RecordingEndpoint()
    service = build_service(feed, endpoint, [NOW])

    try:
        await service.start()
        await service.gate.drain(timeout=2.0)
        if endpoint.sent:
            console.print("❌ Existing records produced notifications", style="red")
            return False
        console.print("✅ Existing records suppressed at bootstrap", style="green")

        await feed.push(
            "/appointments",
            {
                "doctorId": "doc1",
                "patientId": "pat2",
                "patientName": "Sara",
                "doctorName": "Abel",
                "timestamp": NOW + 3 * 86_400_000,
            },
        )
        await feed.push("/chats/c1/messages", {"from": "doc1", "to": "pat1", "text": "Hello"})
        await feed.update("/payments/pay1", {"status": "paid"})
        await service.gate.drain(timeout=2.0)
    finally:
        await service.stop()

    print_sent("Notifications Sent", endpoint.sent)
    expected = 4
    if len(endpoint.sent) != expected:
        console.print(f"❌ Expected {expected} notifications", style="red")
        return False
    console.print("✅ New records routed to their recipients", style="green")
    return True


async def check_reminders() -> bool:
    """The 20 and 10 minute reminders each fire once across scans."""

    console.print(Panel("⏰ Checking Appointment Reminders", style="blue"))

    clock = [NOW]
    feed = InMemoryMutationFeed(
        {
            "users": seed_data()["users"],
            "appointments": {
                "a1": {
                    "doctorId": "doc1",
                    "patientId": "pat1",
                    "doctorName": "Abel",
                    "patientName": "Liya",
                    "timestamp": NOW + 15 * MINUTE_MILLIS,
                }
            },
        }
    )
    endpoint = RecordingEndpoint()
    service = build_service(feed, endpoint, clock)

    reports = []
    try:
        for offset in (0, 6, 8):
            clock[0] = NOW + offset * MINUTE_MILLIS
            reports.append(await service.scheduler.scan_once())
    finally:
        await service.dispatcher.aclose()

    table = Table(title="Scan Reports")
    table.add_column("Cycle", style="cyan")
    table.add_column("Scanned", style="white")
    table.add_column("Reminders Fired", style="green")
    table.add_column("Failed", style="red")
    for cycle, report in enumerate(reports, start=1):
        table.add_row(
            str(cycle), str(report.scanned), str(report.reminders_fired), str(report.failed)
        )
    console.print(table)
    print_sent("Reminders Sent", endpoint.sent)

    fired = [report.reminders_fired for report in reports]
    if fired != [1, 1, 0]:
        console.print(f"❌ Unexpected reminder sequence {fired}", style="red")
        return False
    console.print("✅ Each reminder fired exactly once", style="green")
    return True


async def check_error_handling() -> bool:
    """A failing delivery for one recipient does not block the other."""

    console.print(Panel("🛡️ Checking Error Handling", style="blue"))

    feed = InMemoryMutationFeed({"users": seed_data()["users"]})
    endpoint = RecordingEndpoint(failing=frozenset({"player-doc1"}))
    service = build_service(feed, endpoint, [NOW])

    try:
        await service.start()
        await feed.push(
            "/appointments", {"doctorId": "doc1", "patientId": "pat1", "timestamp": NOW}
        )
        await service.gate.drain(timeout=2.0)
    finally:
        await service.stop()

    failed = service.dispatcher.failed_count
    console.print(f"Delivery failures recorded: {failed}", style="yellow")
    if [payload["playerId"] for payload in endpoint.sent] != ["player-pat1"] or failed != 1:
        console.print("❌ Sibling notification was not delivered", style="red")
        return False
    console.print("✅ Failure isolated to one recipient", style="green")
    return True


async def run_all_checks() -> bool:
    """Run all system checks."""

    console.print(Panel("🧪 Notifier - System Checks", style="bold blue"))

    checks = [
        ("Configuration", check_configuration),
        ("Event Routing", check_routing),
        ("Appointment Reminders", check_reminders),
        ("Error Handling", check_error_handling),
    ]

    results = []

    for check_name, check_func in checks:
        console.print(f"\n{'=' * 60}")
        try:
            result = await check_func()
            results.append((check_name, result))
        except KeyboardInterrupt:
            console.print("\n⏹️  Checks interrupted by user", style="yellow")
            break
        except Exception as e:
            console.print(f"❌ {check_name} failed with exception: {e}", style="red")
            results.append((check_name, False))

    console.print(f"\n{'=' * 60}")
    console.print(Panel("📋 Check Results Summary", style="bold"))

    summary_table = Table()
    summary_table.add_column("Check", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for check_name, result in results:
        if result:
            summary_table.add_row(check_name, "✅ PASSED")
            passed += 1
        else:
            summary_table.add_row(check_name, "❌ FAILED")

    console.print(summary_table)
    console.print(f"\n🎯 Results: {passed}/{len(results)} checks passed")

    if passed == len(results):
        console.print("🎉 All checks passed! The notifier is ready.", style="green")
    else:
        console.print("⚠️  Some checks failed. Check the logs above for details.", style="yellow")
    return passed == len(results)


if __name__ == "__main__":
    try:
        sys.exit(0 if asyncio.run(run_all_checks()) else 1)
    except KeyboardInterrupt:
        console.print("\n👋 Checks stopped by user", style="yellow")
    except Exception as e:
        console.print(f"\n💥 System check failed: {e}", style="red")
        sys.exit(1)
