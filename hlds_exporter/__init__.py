# This file makes the hlds_exporter directory a Python package.

from .models import Target, ServerInfo, OutcomeKind, QueryOutcome
from .query import query_server
from .aggregator import collect_metric_set
from .metrics import build_registry, render
