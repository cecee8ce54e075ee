import json
from pathlib import Path
from typing import Any, Dict, List

from timekeeper.models.health import HealthVerdict

# Exit status for a fault the evaluator itself could not handle
INTERNAL_FAULT_EXIT_CODE = 3


def exit_code_for(verdict: HealthVerdict) -> int:
    """OK -> 0, Warning -> 1, Critical -> 2."""
    return verdict.overall_status.exit_code


def build_report(verdict: HealthVerdict) -> Dict[str, Any]:
    """Field mapping used for the structured export."""
    return {
        "timestamp": verdict.timestamp.isoformat(),
        "overall_status": verdict.overall_status.value,
        "exit_code": exit_code_for(verdict),
        "checks": {
            name: check.model_dump(mode="json") for name, check in verdict.checks.items()
        },
    }


def write_json_report(verdict: HealthVerdict, output_path: Path) -> None:
    """Write the structured export to `output_path`, creating parent dirs."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(
        json.dumps(build_report(verdict), ensure_ascii=False, indent=2),
        encoding="utf-8",
    )


def render_text(verdict: HealthVerdict) -> str:
    lines: List[str] = [
        f"Time sync health: {verdict.overall_status.value.upper()} "
        f"({verdict.timestamp.isoformat(timespec='seconds')})",
    ]
    for check in verdict.checks.values():
        lines.append(f"  [{check.status.value:<8}] {check.name:<13} {check.message}")
    hints = [check for check in verdict.checks.values() if check.remediation]
    if hints:
        lines.append("")
        for check in hints:
            lines.append(f"{check.name}: {check.remediation}")
    return "\n".join(lines)
