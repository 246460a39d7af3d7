import re
from dataclasses import dataclass
from enum import StrEnum

from tern.core.models import PatchProposal


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class Finding:
    severity: Severity
    message: str
    file_path: str | None = None


_ENV_FILE = re.compile(r"(^|/)\.env(\.|$)", re.IGNORECASE)
_RM_RF = re.compile(r"rm\s+-rf\s+", re.IGNORECASE)
_CHMOD_777 = re.compile(r"chmod\s+7{3}", re.IGNORECASE)
_SECRET = re.compile(r"(api[_-]?key|secret|token)\s*[:=]", re.IGNORECASE)


def review(proposal: PatchProposal) -> list[Finding]:
    findings: list[Finding] = []
    seen: set[tuple[Severity, str, str]] = set()

    def add(severity: Severity, message: str, path: str) -> None:
        if (severity, message, path) not in seen:
            seen.add((severity, message, path))
            findings.append(Finding(severity=severity, message=message, file_path=path))

    for hunk in proposal.hunks:
        path = hunk.file_path
        if _ENV_FILE.search(path):
            add(Severity.HIGH, "Patch touches .env files", path)
        added = "\n".join(hunk.new_content)
        if _RM_RF.search(added):
            add(Severity.HIGH, "Patch includes rm -rf", path)
        if _CHMOD_777.search(added):
            add(Severity.MEDIUM, "chmod 777 detected", path)
        if _SECRET.search(added):
            add(Severity.MEDIUM, "Potential secret assignment in patch", path)
    return findings


def has_blocking_findings(findings: list[Finding]) -> bool:
    return any(f.severity is Severity.HIGH for f in findings)
