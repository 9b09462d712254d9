"""Data models for reactivation records, employee type profiles, and run results."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional


STEP_SUCCESS = "success"
STEP_WARNING = "warning"
STEP_ERROR = "error"
STEP_SKIPPED = "skipped"

RECORD_SUCCESS = "success"
RECORD_WARNING = "warning"
RECORD_ERROR = "error"
RECORD_FAILED = "failed"

DEFAULT_PROFILE = "default"


def _unique_preserve(values: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        cleaned = str(value or "").strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


def normalize_email(raw: Optional[str]) -> str:
    return (raw or "").strip().lower()


@dataclass
class LicenseSelection:
    """Represents a Microsoft 365 license selection with disabled service plans."""

    sku_id: str
    disabled_plans: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "LicenseSelection":
        if isinstance(data, str):
            return cls(sku_id=data.strip())
        sku = str(data.get("sku_id") or data.get("sku") or data.get("skuId") or "").strip()
        disabled = data.get("disabled_plans") or data.get("disabledPlans") or []
        return cls(sku_id=sku, disabled_plans=_unique_preserve(disabled))


@dataclass
class EmployeeTypeProfile:
    """Groups and licenses granted to a reactivated account of a given employee type."""

    name: str
    groups: List[str] = field(default_factory=list)
    licenses: List[LicenseSelection] = field(default_factory=list)
    usage_location: Optional[str] = None

    @classmethod
    def from_dict(cls, name: str, data: Optional[Dict[str, Any]]) -> "EmployeeTypeProfile":
        data = data or {}
        groups = data.get("groups") or []
        if isinstance(groups, str):
            groups = [groups]
        licenses: List[LicenseSelection] = []
        raw_licenses = data.get("licenses") or []
        if isinstance(raw_licenses, (str, dict)):
            raw_licenses = [raw_licenses]
        for entry in raw_licenses:
            selection = LicenseSelection.from_dict(entry)
            if selection.sku_id:
                licenses.append(selection)
        usage_location = str(data.get("usage_location") or "").strip() or None
        return cls(
            name=name,
            groups=_unique_preserve(groups),
            licenses=licenses,
            usage_location=usage_location,
        )


@dataclass(frozen=True)
class ReactivationRecord:
    """A single row from the reactivation list."""

    email: str
    employee_type: str = ""
    line_number: int = 0

    @property
    def lookup(self) -> str:
        return normalize_email(self.email)


@dataclass
class StepResult:
    step: str
    status: str
    message: str = ""

    def describe(self) -> str:
        if self.message:
            return f"{self.step}={self.status} ({self.message})"
        return f"{self.step}={self.status}"


@dataclass
class RecordResult:
    """Outcome of reactivating one account."""

    record: ReactivationRecord
    user_id: Optional[str] = None
    user_principal_name: Optional[str] = None
    temporary_password: Optional[str] = None
    not_found: bool = False
    steps: List[StepResult] = field(default_factory=list)

    def add(self, step: str, status: str, message: str = "") -> StepResult:
        result = StepResult(step=step, status=status, message=message)
        self.steps.append(result)
        return result

    @property
    def found(self) -> bool:
        return self.user_id is not None

    @property
    def errors(self) -> List[StepResult]:
        return [step for step in self.steps if step.status == STEP_ERROR]

    @property
    def warnings(self) -> List[StepResult]:
        return [step for step in self.steps if step.status == STEP_WARNING]

    @property
    def status(self) -> str:
        if not self.found:
            return RECORD_FAILED
        if self.errors:
            return RECORD_ERROR
        if self.warnings:
            return RECORD_WARNING
        return RECORD_SUCCESS


@dataclass
class RunSummary:
    """Counters accumulated over a reactivation run."""

    total: int = 0
    succeeded: int = 0
    warnings: int = 0
    failed: int = 0
    not_found: int = 0
    skipped_rows: int = 0
    results: List[RecordResult] = field(default_factory=list)

    def record(self, result: RecordResult) -> None:
        self.results.append(result)
        self.total += 1
        status = result.status
        if status == RECORD_SUCCESS:
            self.succeeded += 1
        elif status == RECORD_WARNING:
            self.succeeded += 1
            self.warnings += 1
        elif status == RECORD_FAILED:
            self.failed += 1
            if result.not_found:
                self.not_found += 1
        else:
            self.failed += 1

    @property
    def has_failures(self) -> bool:
        return self.failed > 0


__all__ = [
    "DEFAULT_PROFILE",
    "EmployeeTypeProfile",
    "LicenseSelection",
    "ReactivationRecord",
    "RecordResult",
    "RunSummary",
    "StepResult",
    "normalize_email",
]
