"""
ITIL Change Engine

Change management workflow core with:
- Lifecycle state machine (draft → ... → closed)
- Multi-approver quorum gate
- Schedule window kept in step with status transitions
- Ticket/problem links mirrored into both histories
- Append-only audit trail
"""

__version__ = "0.1.0"
