#!/usr/bin/env python3
"""
Export JSON Schema files from the AutoReach Pydantic models.
- Draft: 2020-12
- Sources: autoreach/schemas.py (AutomationRequest, AutomationResult, DetectionCandidate, ConsentGrant)
- Outputs: schemas/*.schema.json
"""
import json
from pathlib import Path
from typing import Any, Dict, Optional

from autoreach.schemas import AutomationRequest, AutomationResult, ConsentGrant, DetectionCandidate

ROOT = Path(__file__).resolve().parents[1]
SCHEMAS_DIR = ROOT / "schemas"

SCHEMA_VERSION = "https://json-schema.org/draft/2020-12/schema"


def add_common_headers(schema: Dict[str, Any], title: str, description: str, example: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    schema.setdefault("$schema", SCHEMA_VERSION)
    schema.setdefault("title", title)
    schema.setdefault("description", description)
    if example is not None:
        schema.setdefault("examples", [example])
    return schema


def candidate_example() -> dict:
    return {
        "url": "https://example.com/contact",
        "title": "Contact Us",
        "confidence": 85,
        "method": "pattern_probe",
        "has_form": True,
        "has_contact_info": True,
        "page_type": "contact",
        "reasoning": "Found at common path: /contact",
    }


def request_example() -> dict:
    return {
        "url": "https://example.com",
        "user_id": "user-1",
        "origin": "http://localhost:3000",
        "grant_id": "grant_0f3c9a",
        "subject_name": "Example Inc.",
        "auto_submit": False,
    }


def result_example() -> dict:
    return {
        "request_url": "https://example.com",
        "status": "completed",
        "contact_page_url": "https://example.com/contact",
        "candidates": [candidate_example()],
        "defenses": [],
        "protection": {"types": [], "confidence": 0},
        "strategy_errors": {},
        "started_at": "2026-01-05T10:15:00Z",
        "duration_ms": 4120,
    }


def grant_example() -> dict:
    return {
        "id": "grant_0f3c9a",
        "request_id": "consent_51b2e0",
        "user_id": "user-1",
        "origin": "http://localhost:3000",
        "action": "form-automation",
        "permissions": ["read", "control"],
        "granted_at": "2026-01-05T10:14:00Z",
        "expires_at": "2026-01-05T10:44:00Z",
        "metadata": {"session_id": "9d1e"},
    }


def save_schema(model, path: Path, title: str, description: str, example: dict):
    schema = model.model_json_schema()
    schema = add_common_headers(schema, title, description, example)
    path.write_text(json.dumps(schema, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    print(f"Wrote {path.relative_to(ROOT)}")


def main():
    SCHEMAS_DIR.mkdir(parents=True, exist_ok=True)
    save_schema(
        DetectionCandidate,
        SCHEMAS_DIR / "detection_candidate.schema.json",
        "DetectionCandidate",
        "A URL believed to be a contact page, with a relative confidence score.",
        candidate_example(),
    )
    save_schema(
        AutomationRequest,
        SCHEMAS_DIR / "automation_request.schema.json",
        "AutomationRequest",
        "One automation run against a target site, authorized by a consent grant.",
        request_example(),
    )
    save_schema(
        AutomationResult,
        SCHEMAS_DIR / "automation_result.schema.json",
        "AutomationResult",
        "Outcome of an automation run: contact page, extracted content, defenses met.",
        result_example(),
    )
    save_schema(
        ConsentGrant,
        SCHEMAS_DIR / "consent_grant.schema.json",
        "ConsentGrant",
        "Time-boxed permission set for one user, origin and action.",
        grant_example(),
    )


if __name__ == "__main__":
    main()
