#!/usr/bin/env python3
from __future__ import annotations

import importlib
import os
import sys
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

APOLOGY_PREFIXES = ("I apologize", "I can see you've shared", "I've received your")


@dataclass
class Scenario:
  name: str
  message: str
  message_type: str = "text"
  upload: tuple[str, bytes, str] | None = None
  expected_fragments: list[str] = field(default_factory=list)


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  workdir = Path(tempfile.mkdtemp(prefix="medassist-smoke-"))
  os.environ.setdefault("MEDASSIST_DB_PATH", str(workdir / "smoke.sqlite"))
  os.environ.setdefault("MEDASSIST_UPLOAD_DIR", str(workdir / "uploads"))
  os.environ.setdefault("JWT_SECRET", uuid.uuid4().hex)

  backend_module = importlib.import_module("main")
  if not backend_module.container.inference.config.api_key:
    print("GROQ_API_KEY is not set; the smoke run needs a live provider.")
    return 2

  scenarios = [
    Scenario(name="Text Symptom Question", message="I have had a mild headache for two days. What can I do?"),
    Scenario(
      name="Document Summary",
      message="What stands out in these results?",
      message_type="document",
      upload=(
        "cbc.txt",
        b"CBC panel: Hemoglobin 10.9 g/dL (low). WBC 7.1. Platelets 250. Ferritin 8 ng/mL (low).",
        "text/plain",
      ),
      expected_fragments=["**Document Analysis:**"],
    ),
    Scenario(name="Follow-up With Context", message="Is that related to what I asked before?"),
  ]

  results: list[dict[str, Any]] = []
  session_id = f"smoke-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}"

  with TestClient(backend_module.app) as client:
    registered = client.post(
      "/api/auth/register",
      json={
        "email": f"smoke-{uuid.uuid4().hex[:8]}@example.com",
        "password": "smoke-password",
        "name": "Smoke Patient",
        "role": "patient",
      },
    )
    if registered.status_code != 201:
      print(f"Registration failed: {registered.status_code} {registered.text[:200]}")
      return 1
    headers = {"Authorization": f"Bearer {registered.json()['token']}"}

    for scenario in scenarios:
      scenario_result: dict[str, Any] = {"name": scenario.name, "message_type": scenario.message_type}
      body: dict[str, Any] = {
        "sessionId": session_id,
        "message": scenario.message,
        "messageType": scenario.message_type,
      }

      if scenario.upload is not None:
        upload_response = client.post(
          "/api/upload",
          headers=headers,
          data={"sessionId": session_id},
          files=[("files", scenario.upload)],
        )
        scenario_result["upload_status_code"] = upload_response.status_code
        if upload_response.status_code != 200:
          scenario_result["pass"] = False
          scenario_result["error"] = f"/api/upload returned {upload_response.status_code}"
          results.append(scenario_result)
          continue
        record = upload_response.json()["files"][0]
        scenario_result["upload_analysis_preview"] = (record.get("aiAnalysis") or "")[:240]
        body.update({"fileUrl": record["fileUrl"], "fileName": record["fileName"], "fileType": record["fileType"]})

      response = client.post("/api/chat/message", headers=headers, json=body)
      scenario_result["chat_status_code"] = response.status_code
      if response.status_code != 200:
        scenario_result["pass"] = False
        scenario_result["error"] = f"/api/chat/message returned {response.status_code}"
        results.append(scenario_result)
        continue

      payload = response.json()
      reply = payload.get("aiResponse") or ""
      scenario_result["reply_preview"] = reply[:240]
      scenario_result["explanation_preview"] = (payload.get("explanation") or "")[:240]
      missing = [fragment for fragment in scenario.expected_fragments if fragment not in reply]
      scenario_result["pass"] = bool(reply) and not reply.startswith(APOLOGY_PREFIXES) and not missing
      if not scenario_result["pass"]:
        scenario_result["error"] = f"Fallback reply or missing fragments: {missing}"
      results.append(scenario_result)

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Chat Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- Text model: `{backend_module.container.inference.config.text_model}`",
    f"- Total scenarios: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Scenario Results",
    "",
  ]
  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    report_lines.append(f"- Message type: `{item.get('message_type')}`")
    report_lines.append(f"- Chat status code: `{item.get('chat_status_code')}`")
    if "upload_status_code" in item:
      report_lines.append(f"- Upload status code: `{item['upload_status_code']}`")
    if item.get("error"):
      report_lines.append(f"- Error: `{item['error']}`")
    for key in ("upload_analysis_preview", "reply_preview", "explanation_preview"):
      if item.get(key):
        report_lines.append(f"- {key.replace('_', ' ').capitalize()}: `{item[key]}`")
    report_lines.append("")

  report_path = repo_root / "CHAT_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(results)} scenarios.")

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
