"""In-memory fake of the Rivestack API for tests.

Usage:
    from rivestack_mock import MockRivestackClient, MockRivestackState

    state = MockRivestackState()
    cluster = state.add_cluster(node_count=1)
    state.fail_next("configure_cluster", ConflictError(409, "busy"), times=2)

    handler = UserHandler(MockRivestackClient(state), timeouts)
    await handler.create(UserResource(cluster_id=cluster.id, username="app"))

    assert len(state.calls_to("configure_cluster")) == 3
"""

from .client import EXTENSIONS, SERVER_TYPES, MockRivestackClient
from .state import MUTATING_METHODS, MockRivestackState, RecordedCall

__all__ = [
    "EXTENSIONS",
    "MUTATING_METHODS",
    "SERVER_TYPES",
    "MockRivestackClient",
    "MockRivestackState",
    "RecordedCall",
]
