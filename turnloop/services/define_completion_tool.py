"""Define Completion Tool — Anthropic tool schema and handler for report_complete.

Invariants:
    - Schema follows Anthropic tool_use format; only `summary` is required
    - A successful report_complete call is the primary completion signal
    - Handler rejects a missing or blank summary (raises, becomes an is_error result)

Design Decisions:
    - Tool schema in a dedicated file: explicit, no auto-discovery
    - `success` describes the task outcome, not the call: a task finished with
      issues still ends the conversation
"""

from datetime import datetime, timezone

REPORT_COMPLETE = "report_complete"

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

REPORT_COMPLETE_TOOL = {
    "name": REPORT_COMPLETE,
    "description": """Signal that you have completed the assigned task, with a final report.

Call this exactly once, when the work is finished. The conversation ends after
this call succeeds. Include:
- A clear summary of what was accomplished
- Whether the task succeeded
- Files created or modified, tests run and validation results
- Optional suggestions for follow-up work""",
    "input_schema": {
        "type": "object",
        "properties": {
            "summary": {
                "type": "string",
                "description": "A clear summary of what was accomplished",
            },
            "success": {
                "type": "boolean",
                "description": "Whether the task was completed successfully",
            },
            "files_created": {
                **_STRING_LIST,
                "description": "Files created during the task",
            },
            "files_modified": {
                **_STRING_LIST,
                "description": "Files modified during the task",
            },
            "tests_run": {
                **_STRING_LIST,
                "description": "Tests or validation steps that were executed",
            },
            "validation_results": {
                **_STRING_LIST,
                "description": "Results of the validation steps performed",
            },
            "next_steps": {
                **_STRING_LIST,
                "description": "Optional suggestions for follow-up work",
            },
        },
        "required": ["summary"],
    },
}


async def handle_report_complete(parameters: dict) -> dict:
    """Validate and echo the completion report."""
    summary = parameters.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        raise ValueError("summary parameter must be a non-empty string")
    return {
        "completed": True,
        "task_success": bool(parameters.get("success", True)),
        "summary": summary.strip(),
        "files_created": list(parameters.get("files_created") or []),
        "files_modified": list(parameters.get("files_modified") or []),
        "tests_run": list(parameters.get("tests_run") or []),
        "validation_results": list(parameters.get("validation_results") or []),
        "next_steps": list(parameters.get("next_steps") or []),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
