"""
MedAudit Protocol Workflow
==========================

A Python framework for prospective medical-authorization auditing in
health-plan operators.  A protocol moves from operator triage through
generalist and specialist medical audit to guide release, with role-gated
transitions, specialty queue routing, SLA metrics, AI decision support and
a per-protocol collaboration chat.

All AI output is advisory.  Status and workflow step only change through an
explicit action by an authorized person.
"""

__version__ = "0.1.0"
