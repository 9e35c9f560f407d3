from specflow.state.commits import CommitResult, CommitService
from specflow.state.store import FlowStateStore, sanitize_feature_name, write_json_atomic

__all__ = [
    "CommitResult",
    "CommitService",
    "FlowStateStore",
    "sanitize_feature_name",
    "write_json_atomic",
]
