from orchestrator import hooks
from orchestrator import interfaces
from orchestrator import mediator
from orchestrator import observability
from orchestrator import registry
from orchestrator import settings

from orchestrator.hooks import (HOOKS, apply_create_hooks,)
from orchestrator.interfaces import (RecordStore, Result,)
from orchestrator.mediator import (RequestMediator,)
from orchestrator.observability import (ObservabilityManager, TraceSpan,
                                        configure_logging, evaluation_incomplete,
                                        get_metrics, increment, observability,
                                        trace_request,)
from orchestrator.registry import (Registry,)
from orchestrator.settings import (Settings,)

__all__ = ['HOOKS', 'ObservabilityManager', 'RecordStore', 'Registry',
           'RequestMediator', 'Result', 'Settings', 'TraceSpan',
           'apply_create_hooks', 'configure_logging', 'evaluation_incomplete',
           'get_metrics', 'hooks', 'increment', 'interfaces', 'mediator',
           'observability', 'registry', 'settings', 'trace_request']
