"""FastAPI HTTP surface of the policy engine."""

from insiderguard.policy_engine.api.router import router

__all__ = ["router"]
