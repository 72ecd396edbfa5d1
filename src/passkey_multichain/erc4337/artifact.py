"""Audit artifact writer for multi-chain submissions."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class SubmissionArtifact:
    path: str
    sha256: str


def write_submission_artifact(
    *,
    base_dir: str,
    action_id: str,
    account_address: str,
    signing_mode: str,
    outcome: str,
    operations: list[dict[str, Any]],
    results: list[dict[str, Any]],
) -> SubmissionArtifact:
    """Write one JSON record per logical action, digest included.

    operations holds the signed user operations in signing order; results
    holds the per-chain outcomes. The record is for display and audit only.
    """
    now = datetime.now(timezone.utc)
    output_dir = Path(base_dir).expanduser() / now.strftime("%Y-%m-%d")
    output_dir.mkdir(parents=True, exist_ok=True)

    file_name = f"{action_id}-{int(now.timestamp())}.json"
    file_path = output_dir / file_name

    payload = {
        "version": 1,
        "created_at": now.isoformat(),
        "action_id": action_id,
        "account_address": account_address,
        "signing_mode": signing_mode,
        "outcome": outcome,
        "operations": operations,
        "results": results,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    payload["sha256"] = digest
    file_path.write_text(json.dumps(payload, indent=2, sort_keys=True, default=str), encoding="utf-8")
    return SubmissionArtifact(path=str(file_path), sha256=digest)
