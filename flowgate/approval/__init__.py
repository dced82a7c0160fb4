"""
Flowgate Approval

Suspend/resume gate for steps requiring human sign-off.
"""

from flowgate.approval.gate import ApprovalGate

__all__ = ["ApprovalGate"]
