"""Pipeline Controller: gated plan/apply workflow per change request.

Modules:
- records: versioned ChangeRequest records, transition rules, in-memory stores
- sql_records: SQL change request and history stores sharing the state engine
- controller: PipelineController consuming CI and approval events
"""

from aumos_iac_orchestrator.pipeline.controller import PipelineController
from aumos_iac_orchestrator.pipeline.records import (
    ChangeRequest,
    ChangeRequestEvent,
    ChangeRequestHistory,
    ChangeRequestStore,
)
from aumos_iac_orchestrator.pipeline.sql_records import SqlChangeRequestHistory, SqlChangeRequestStore

__all__ = [
    "ChangeRequest",
    "ChangeRequestEvent",
    "ChangeRequestHistory",
    "ChangeRequestStore",
    "PipelineController",
    "SqlChangeRequestHistory",
    "SqlChangeRequestStore",
]
