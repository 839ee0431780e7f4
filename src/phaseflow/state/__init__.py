from phaseflow.state.artifacts import ArtifactStore, Savepoint, content_hash
from phaseflow.state.ledger import JsonLedger
from phaseflow.state.vcs import VCS, GitVCS, WorktreeSnapshot

__all__ = [
    "VCS",
    "ArtifactStore",
    "GitVCS",
    "JsonLedger",
    "Savepoint",
    "WorktreeSnapshot",
    "content_hash",
]
