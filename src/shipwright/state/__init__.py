from shipwright.state.git import GitWorkspace, VersionControl
from shipwright.state.run_state import RunState, RunStateStore, migrate_legacy, new_run_id
from shipwright.state.store import EnvelopeFile

__all__ = [
    "EnvelopeFile",
    "GitWorkspace",
    "RunState",
    "RunStateStore",
    "VersionControl",
    "migrate_legacy",
    "new_run_id",
]
