from .gate import STAFF_ROLES, AccessDecision, AccessReason, AccountLifecycleGate

__all__ = ['STAFF_ROLES', 'AccessDecision', 'AccessReason', 'AccountLifecycleGate']
