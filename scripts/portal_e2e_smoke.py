#!/usr/bin/env python3
from __future__ import annotations

import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from fastapi.testclient import TestClient

DOCTOR_ID = "smoke-doctor"
PATIENT_ID = "smoke-patient"


@dataclass
class ScenarioResult:
  name: str
  passed: bool = False
  error: str | None = None
  details: dict[str, Any] = field(default_factory=dict)


def parse_sse_events(payload_text: str) -> list[dict[str, Any]]:
  events: list[dict[str, Any]] = []
  current: dict[str, Any] = {}
  for raw_line in payload_text.splitlines():
    line = raw_line.strip("\r")
    if line.startswith("event: "):
      current["event"] = line[7:]
    elif line.startswith("data: "):
      try:
        current["data"] = json.loads(line[6:])
      except json.JSONDecodeError:
        current["data"] = line[6:]
    elif line == "" and current:
      events.append(current)
      current = {}
  if current:
    events.append(current)
  return events


def headers_for(user_id: str) -> dict[str, str]:
  return {"Authorization": f"Bearer {user_id}"}


def register_profiles(client: TestClient, state: dict[str, Any]) -> dict[str, Any]:
  doctor = client.post("/profile", headers=headers_for(DOCTOR_ID), json={"full_name": "Smoke Doctor", "role": "doctor"})
  patient = client.post("/profile", headers=headers_for(PATIENT_ID), json={"full_name": "Smoke Patient"})
  if doctor.status_code != 200 or patient.status_code != 200:
    raise AssertionError(f"profile upsert returned {doctor.status_code}/{patient.status_code}")
  return {"doctor_role": doctor.json()["role"], "patient_role": patient.json()["role"]}


def book_and_claim(client: TestClient, state: dict[str, Any]) -> dict[str, Any]:
  booked = client.post("/appointments", headers=headers_for(PATIENT_ID), json={"date": "2026-11-02T09:00:00"})
  if booked.status_code != 200 or booked.json().get("status") != "pending":
    raise AssertionError(f"booking returned {booked.status_code}: {booked.text[:200]}")
  appointment_id = booked.json()["id"]
  state["appointment_id"] = appointment_id

  claimed = client.post(
    f"/appointments/{appointment_id}/status",
    headers=headers_for(DOCTOR_ID),
    json={"status": "approved"},
  )
  if claimed.status_code != 200 or claimed.json().get("doctor_id") != DOCTOR_ID:
    raise AssertionError(f"claim returned {claimed.status_code}: {claimed.text[:200]}")
  return {"appointment_id": appointment_id, "claim": claimed.json()}


def exchange_messages(client: TestClient, state: dict[str, Any]) -> dict[str, Any]:
  contacts = client.get("/contacts", headers=headers_for(PATIENT_ID)).json().get("items", [])
  if [contact["id"] for contact in contacts] != [DOCTOR_ID]:
    raise AssertionError(f"patient contacts were {contacts!r}")

  sent = client.post(f"/threads/{DOCTOR_ID}/messages", headers=headers_for(PATIENT_ID), json={"text": "Smoke hello"})
  reply = client.post(f"/threads/{PATIENT_ID}/messages", headers=headers_for(DOCTOR_ID), json={"text": "Smoke reply"})
  if sent.json().get("status") != "success" or reply.json().get("status") != "success":
    raise AssertionError("message send did not confirm")

  thread = client.get(f"/threads/{DOCTOR_ID}/messages", headers=headers_for(PATIENT_ID)).json()
  texts = [item["text"] for item in thread.get("items", [])]
  if texts != ["Smoke hello", "Smoke reply"]:
    raise AssertionError(f"thread contents were {texts!r}")
  return {"thread_filter": thread.get("filter"), "texts": texts}


def stream_titles(client: TestClient, user_id: str) -> tuple[list[str], list[str]]:
  response = client.get("/notifications/stream", headers=headers_for(user_id), params={"window_seconds": 0.5})
  if response.status_code != 200:
    raise AssertionError(f"/notifications/stream returned {response.status_code}")
  events = parse_sse_events(response.text)
  titles = [event["data"]["title"] for event in events if event.get("event") == "notice"]
  history = next((event["data"]["transport_history"] for event in events if event.get("event") == "end"), [])
  return titles, history


def live_stream(client: TestClient, state: dict[str, Any]) -> dict[str, Any]:
  titles, history = stream_titles(client, DOCTOR_ID)
  if "Live Notifications Active" not in titles or "live" not in history:
    raise AssertionError(f"live stream titles {titles!r}, history {history!r}")
  return {"titles": titles, "transport_history": history}


def fallback_stream(client: TestClient, state: dict[str, Any]) -> dict[str, Any]:
  from portal_store.changes import BUS_OFFLINE, BUS_ONLINE

  changes = state["container"].db.changes
  changes.set_state(BUS_OFFLINE)
  try:
    titles, history = stream_titles(client, PATIENT_ID)
  finally:
    changes.set_state(BUS_ONLINE)
  if "Switched to Auto-Refresh Mode" not in titles or "polling" not in history:
    raise AssertionError(f"fallback stream titles {titles!r}, history {history!r}")
  return {"titles": titles, "transport_history": history}


SCENARIOS: list[tuple[str, Callable[[TestClient, dict[str, Any]], dict[str, Any]]]] = [
  ("Register Doctor And Patient", register_profiles),
  ("Book And Claim Appointment", book_and_claim),
  ("Exchange Thread Messages", exchange_messages),
  ("Live Notification Stream", live_stream),
  ("Polling Fallback Stream", fallback_stream),
]


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  scratch = tempfile.TemporaryDirectory(prefix="medilink-smoke-")
  os.environ["PORTAL_DB_PATH"] = str(Path(scratch.name) / "smoke.sqlite")
  os.environ.setdefault("PORTAL_POLL_INTERVAL_SECONDS", "0.1")

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)

  state: dict[str, Any] = {"container": backend_module.container}
  results: list[ScenarioResult] = []

  with TestClient(backend_module.app) as client:
    for name, scenario in SCENARIOS:
      result = ScenarioResult(name=name)
      try:
        result.details = scenario(client, state)
        result.passed = True
      except Exception as exc:
        result.error = f"{type(exc).__name__}: {exc}"
      results.append(result)

  scratch.cleanup()

  passed = sum(1 for item in results if item.passed)
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Portal E2E Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- PORTAL_POLL_INTERVAL_SECONDS: `{os.getenv('PORTAL_POLL_INTERVAL_SECONDS')}`",
    f"- Total scenarios: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Scenario Results",
    "",
  ]

  for item in results:
    status = "PASS" if item.passed else "FAIL"
    report_lines.append(f"### {status} - {item.name}")
    if item.error:
      report_lines.append(f"- Error: `{item.error}`")
    report_lines.append("```json")
    report_lines.append(json.dumps(item.details, indent=2, ensure_ascii=True))
    report_lines.append("```")
    report_lines.append("")

  report_path = repo_root / "PORTAL_E2E_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(results)} scenarios.")

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
