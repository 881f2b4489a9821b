"""
cmdb/compliance.py -- Regulatory checklist status per organization.

The control catalog is static data. Organizations record one assessment per
control; a control nobody has assessed yet reads as "not_started". The score
is the percentage of controls marked compliant, rounded half up.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from cmdb.access import require_org_access
from cmdb.errors import InvalidInputError
from cmdb.models import COMPLIANCE_STATUSES, ComplianceAssessment, Principal
from cmdb.store import CMDBStore
from core.config import now_iso

logger = logging.getLogger("cryptiomt.compliance")


@dataclass(frozen=True)
class ComplianceControl:
    id: str
    name: str
    description: str
    category: str


# HIPAA Security Rule, the subset tracked for medical device programs.
HIPAA_CONTROLS = (
    ComplianceControl(
        "164.308(a)(1)(i)",
        "Security Management Process",
        "Implement policies and procedures to prevent, detect, contain, and correct security violations.",
        "Administrative Safeguards",
    ),
    ComplianceControl(
        "164.308(a)(1)(ii)(A)",
        "Risk Analysis",
        "Conduct an accurate and thorough assessment of the potential risks and vulnerabilities to the "
        "confidentiality, integrity, and availability of electronic protected health information.",
        "Administrative Safeguards",
    ),
    ComplianceControl(
        "164.308(a)(1)(ii)(B)",
        "Risk Management",
        "Implement security measures sufficient to reduce risks and vulnerabilities to a reasonable and "
        "appropriate level.",
        "Administrative Safeguards",
    ),
    ComplianceControl(
        "164.308(a)(5)(ii)(B)",
        "Protection from Malicious Software",
        "Procedures for guarding against, detecting, and reporting malicious software.",
        "Administrative Safeguards",
    ),
    ComplianceControl(
        "164.312(a)(1)",
        "Access Control",
        "Allow access to electronic protected health information only to persons or software programs "
        "that have been granted access rights.",
        "Technical Safeguards",
    ),
    ComplianceControl(
        "164.312(a)(2)(iv)",
        "Encryption and Decryption",
        "Implement a mechanism to encrypt and decrypt electronic protected health information.",
        "Technical Safeguards",
    ),
    ComplianceControl(
        "164.312(b)",
        "Audit Controls",
        "Implement mechanisms that record and examine activity in information systems that contain or use "
        "electronic protected health information.",
        "Technical Safeguards",
    ),
)

FRAMEWORKS: dict[str, tuple[ComplianceControl, ...]] = {"hipaa": HIPAA_CONTROLS}
DEFAULT_FRAMEWORK = "hipaa"


def _controls(framework_id: str) -> tuple[ComplianceControl, ...]:
    controls = FRAMEWORKS.get(framework_id)
    if controls is None:
        raise InvalidInputError(f"unknown compliance framework '{framework_id}'")
    return controls


def compliance_score(statuses: list[str]) -> int:
    """Percentage of statuses that are "compliant", 0 for an empty list."""
    if not statuses:
        return 0
    compliant = sum(1 for s in statuses if s == "compliant")
    return int(compliant * 100 / len(statuses) + 0.5)


def build_compliance_status(
    store: CMDBStore, org_id: int, framework_id: str = DEFAULT_FRAMEWORK
) -> dict:
    """Unchecked read used by the report composer. See get_compliance_status()."""
    controls = _controls(framework_id)
    assessed = {a.control_id: a for a in store.list_assessments(org_id, framework_id)}
    rows = []
    for control in controls:
        assessment = assessed.get(control.id)
        rows.append(
            {
                "id": control.id,
                "name": control.name,
                "description": control.description,
                "category": control.category,
                "status": assessment.status if assessment else "not_started",
                "evidence": (assessment.evidence or "") if assessment else "",
                "last_updated": assessment.last_updated if assessment else None,
                "updated_by": assessment.updated_by if assessment else None,
            }
        )
    return {
        "framework_id": framework_id,
        "controls": rows,
        "score": compliance_score([r["status"] for r in rows]),
    }


def get_compliance_status(
    store: CMDBStore,
    principal: Optional[Principal],
    org_id: int,
    framework_id: str = DEFAULT_FRAMEWORK,
) -> dict:
    """Every control of the framework merged with the organization's assessments.

    Returns {"framework_id", "controls": [...], "score"} with controls in
    catalog order.
    """
    require_org_access(store, principal, org_id)
    return build_compliance_status(store, org_id, framework_id)


def update_compliance_status(
    store: CMDBStore,
    principal: Optional[Principal],
    org_id: int,
    control_id: str,
    status: str,
    evidence: Optional[str] = None,
    framework_id: str = DEFAULT_FRAMEWORK,
) -> dict:
    """Record the status of one control and return the refreshed checklist."""
    require_org_access(store, principal, org_id, write=True)
    if control_id not in {c.id for c in _controls(framework_id)}:
        raise InvalidInputError(f"unknown control '{control_id}' for framework '{framework_id}'")
    if status not in COMPLIANCE_STATUSES:
        raise InvalidInputError(f"status must be one of {', '.join(COMPLIANCE_STATUSES)}")

    store.upsert_assessment(
        ComplianceAssessment(
            organization_id=org_id,
            framework_id=framework_id,
            control_id=control_id,
            status=status,
            evidence=evidence,
            updated_by=principal.id,
            last_updated=now_iso(),
        )
    )
    logger.info("Org %d control %s marked %s by user %d", org_id, control_id, status, principal.id)
    return build_compliance_status(store, org_id, framework_id)
