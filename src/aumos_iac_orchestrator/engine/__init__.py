"""Plan/Apply Engine: diff desired resources against state and apply plans.

Modules:
- diff: pure interpolation, validation, diffing and ordering functions
- service: PlanApplyEngine orchestrating plan and apply under the state lock
"""

from aumos_iac_orchestrator.engine.service import PlanApplyEngine

__all__ = ["PlanApplyEngine"]
