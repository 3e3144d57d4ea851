"""Row-level security: the policy engine and the chat schema's policies."""
from .engine import Command, Policy, PolicyContext, PolicyEngine
from .rules import build_policies, get_policy_engine, register_chat_policies

__all__ = [
    "Command",
    "Policy",
    "PolicyContext",
    "PolicyEngine",
    "build_policies",
    "get_policy_engine",
    "register_chat_policies",
]
