"""Rule policy evaluated by the document store."""
from .policy import Operation, RuleRequest, RULES, allow, evaluate

__all__ = ["Operation", "RuleRequest", "RULES", "allow", "evaluate"]
