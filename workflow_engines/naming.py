"""
workflow_engines.naming -- Workflow codes, step names and step descriptions.

Pure string formatting; no I/O.  Workflow codes look like
``WF-PUR-202401-00001``: prefix, document-type tag, year+month of the
start date, then a zero-padded per-tag-per-month sequence.
"""

from __future__ import annotations

import re
from datetime import datetime

from workflow_engines.approval import required_approvals, timeout_for
from workflow_kernel.domain.approval import ApprovalRule, ApprovalType

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def type_tag(document_type: str) -> str:
    """First three letters of the document type, upper-cased, alphanumerics only."""
    cleaned = _NON_ALNUM.sub("", document_type).upper()
    return cleaned[:3] or "DOC"


def code_sequence_name(prefix: str, document_type: str, when: datetime) -> str:
    """Counter name shared by every workflow code of one tag and month."""
    return f"{prefix}-{type_tag(document_type)}-{when:%Y%m}"


def format_workflow_code(
    prefix: str,
    document_type: str,
    when: datetime,
    sequence: int,
    width: int = 5,
) -> str:
    return f"{code_sequence_name(prefix, document_type, when)}-{sequence:0{width}d}"


def step_name(rule: ApprovalRule) -> str:
    if rule.approval_type == ApprovalType.SINGLE:
        return f"Approval by {rule.approver_name or 'Assigned Staff'}"
    if rule.approval_type == ApprovalType.QUORUM:
        return f"Quorum Approval ({rule.required_approvers} of {rule.pool_size})"
    return f"Approval Step: {rule.code}"


def describe_rule(rule: ApprovalRule) -> str:
    """One-line description used by path previews."""
    pool = rule.pool_size
    if rule.approval_type == ApprovalType.SINGLE:
        return f"Requires approval from {rule.approver_name or 'Assigned Staff'}"
    if rule.approval_type == ApprovalType.QUORUM:
        return f"Requires {rule.required_approvers} out of {pool} approvals"
    if rule.approval_type == ApprovalType.MAJORITY:
        return (
            f"Requires majority approval "
            f"({required_approvals(rule)}+ of {pool} approvals)"
        )
    return f"Requires unanimous approval from all {pool} approvers"


def estimated_days(rule: ApprovalRule, default_timeout_days: int) -> int:
    return timeout_for(rule, default_timeout_days)
