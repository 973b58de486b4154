"""JSON Schemas for the documents herd persists under ``.herd/state``.

Schemas are deliberately permissive about extra keys so documents written
by newer versions still load.
"""

from __future__ import annotations

from typing import Any

from jsonschema import ValidationError, validate

_TIMESTAMP = {"type": "string"}
_OPT_STRING = {"type": ["string", "null"]}

TASK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "status", "description", "queuedAt"],
    "properties": {
        "id": {"type": "string"},
        "sessionId": _OPT_STRING,
        "parentSessionId": _OPT_STRING,
        "parentMessageId": _OPT_STRING,
        "description": {"type": "string"},
        "prompt": {"type": "string"},
        "agent": {"type": "string"},
        "status": {"enum": ["pending", "running", "completed", "error", "cancelled"]},
        "queuedAt": _TIMESTAMP,
        "startedAt": _OPT_STRING,
        "completedAt": _OPT_STRING,
        "result": _OPT_STRING,
        "error": _OPT_STRING,
        "concurrencyKey": {"type": "string"},
        "lastActivityCount": {"type": ["integer", "null"]},
        "stablePolls": {"type": "integer"},
        "seq": {"type": "integer"},
        "progress": {"type": ["object", "null"]},
    },
}

BACKGROUND_STATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["tasks"],
    "properties": {
        "tasks": {"type": "object", "additionalProperties": TASK_SCHEMA},
        "activeCount": {"type": "object", "additionalProperties": {"type": "integer"}},
        "lastUpdated": _TIMESTAMP,
        "nextSeq": {"type": "integer"},
    },
}

MODE_RECORD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["active", "startedAt"],
    "properties": {
        "active": {"type": "boolean"},
        "startedAt": _TIMESTAMP,
        "pid": {"type": "integer"},
        "metadata": {"type": "object"},
    },
}

CHECKPOINT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "commitHash", "createdAt", "phase", "plan", "wave"],
    "properties": {
        "id": {"type": "string"},
        "commitHash": {"type": "string"},
        "createdAt": _TIMESTAMP,
        "phase": {"type": "string"},
        "plan": {"type": "integer"},
        "wave": {"type": "integer"},
        "description": {"type": "string"},
        "stateSnapshot": {"type": "object"},
    },
}

CHECKPOINT_INDEX_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["checkpoints"],
    "properties": {"checkpoints": {"type": "array", "items": CHECKPOINT_SCHEMA}},
}

PARALLEL_RUN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["active", "workers", "ownership"],
    "properties": {
        "active": {"type": "boolean"},
        "originalTask": {"type": "string"},
        "subtasks": {"type": "array", "items": {"type": "string"}},
        "maxWorkers": {"type": "integer"},
        "workers": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "status", "task", "files"],
                "properties": {
                    "status": {"enum": ["pending", "running", "completed", "failed"]},
                    "files": {"type": "array", "items": {"type": "string"}},
                },
            },
        },
        "ownership": {
            "type": "object",
            "required": ["coordinator", "workers", "conflicts"],
            "properties": {
                "coordinator": {"type": "array", "items": {"type": "string"}},
                "workers": {
                    "type": "object",
                    "additionalProperties": {"type": "array", "items": {"type": "string"}},
                },
                "conflicts": {"type": "array", "items": {"type": "string"}},
            },
        },
    },
}

RECOVERY_STATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["errorCount"],
    "properties": {
        "errorCount": {"type": "integer"},
        "lastError": _OPT_STRING,
        "lastErrorAt": _OPT_STRING,
        "cooldownUntil": _OPT_STRING,
        "rolledBackTo": _OPT_STRING,
    },
}

SWARM_STATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["status", "tasks", "workers"],
    "properties": {
        "status": {"enum": ["running", "paused", "completed"]},
        "description": {"type": "string"},
        "startedAt": _OPT_STRING,
        "completedAt": _OPT_STRING,
        "tasks": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "status", "blockedBy"],
                "properties": {
                    "id": {"type": "string"},
                    "status": {
                        "enum": ["pending", "available", "claimed", "completed", "failed"]
                    },
                    "blockedBy": {"type": "array", "items": {"type": "string"}},
                    "claimedBy": _OPT_STRING,
                    "result": {"type": ["object", "null"]},
                },
            },
        },
        "workers": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "status", "lastHeartbeat"],
                "properties": {
                    "id": {"type": "string"},
                    "status": {"enum": ["idle", "executing", "terminated"]},
                    "lastHeartbeat": _TIMESTAMP,
                },
            },
        },
        "stats": {"type": "object"},
    },
}

# Document name -> schema. Mode documents share one schema.
DOCUMENT_SCHEMAS: dict[str, dict[str, Any]] = {
    "background-manager": BACKGROUND_STATE_SCHEMA,
    "checkpoints/index": CHECKPOINT_INDEX_SCHEMA,
    "parallel-run": PARALLEL_RUN_SCHEMA,
    "recovery": RECOVERY_STATE_SCHEMA,
    "swarm": SWARM_STATE_SCHEMA,
    "planning-state": MODE_RECORD_SCHEMA,
    "execution-state": MODE_RECORD_SCHEMA,
    "verification-state": MODE_RECORD_SCHEMA,
    "paused-state": MODE_RECORD_SCHEMA,
    "error-state": MODE_RECORD_SCHEMA,
}


def validation_error(name: str, data: Any) -> str | None:
    """Return the first validation message for document *name*, or None if valid.

    Documents without a registered schema only need to be JSON objects.
    """
    schema = DOCUMENT_SCHEMAS.get(name, {"type": "object"})
    try:
        validate(instance=data, schema=schema)
    except ValidationError as e:
        path = "/".join(str(p) for p in e.absolute_path)
        return f"{path}: {e.message}" if path else e.message
    return None
