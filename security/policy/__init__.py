from security.policy.classification import (Classification, ClassificationRegistry,)
from security.policy.engine import (Decision, Outcome, PolicyEngine,)
from security.policy.loader import (build_policy, load_policy, load_policy_file,)
from security.policy.rbac import (EntityType, Grant, HookSpec, PolicyModel,
                                  TransitionGuard,)

__all__ = ['Classification', 'ClassificationRegistry', 'Decision', 'EntityType',
           'Grant', 'HookSpec', 'Outcome', 'PolicyEngine', 'PolicyModel',
           'TransitionGuard', 'build_policy', 'load_policy', 'load_policy_file']
