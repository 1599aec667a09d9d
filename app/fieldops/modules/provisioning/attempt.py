from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class State(str, enum.Enum):
    START = "start"
    ISSUE_CREDENTIAL = "issue_credential"
    WRITE_PROFILE = "write_profile"
    WRITE_ROLE_RECORD = "write_role_record"
    UPDATE_PROFILE = "update_profile"
    UPDATE_ROLE_RECORD = "update_role_record"
    COMPENSATE = "compensate"
    DONE = "done"
    FAIL = "fail"


TERMINAL_STATES = frozenset({State.DONE, State.FAIL})


@dataclass
class ProvisioningAttempt:
    """
    Book-keeping for one create or edit request: where it is, what it created.
    The compensator only ever touches rows recorded here.
    """

    kind: str
    email: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: State = State.START
    identity_id: str | None = None
    profile_id: str | None = None
    role_record_id: str | None = None
    failure_code: str | None = None
    history: list[State] = field(default_factory=lambda: [State.START])

    def advance(self, state: State) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Attempt {self.id} already finished in state {self.state.value}")
        logger.info("PROVISION: attempt=%s kind=%s %s -> %s", self.id, self.kind, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def fail(self, code: str) -> None:
        self.failure_code = code
        self.advance(State.FAIL)

    @property
    def wrote_profile(self) -> bool:
        return self.profile_id is not None

    @property
    def wrote_role_record(self) -> bool:
        return self.role_record_id is not None
