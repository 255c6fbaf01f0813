from __future__ import annotations

from dataclasses import dataclass

from lms_authz.engine.types import EvaluationResult, Session, SessionMode


@dataclass(frozen=True)
class AuthzContext:
    """
    Per-request authorization context, attached to request.state.authz.

    Handlers read it to see which of the requested rights were actually held
    (OR checks can pass with some rights denied).
    """

    user_id: str
    department_id: str | None
    mode: SessionMode
    escalated_roles: frozenset[str]
    granted_rights: frozenset[str]
    denied_rights: frozenset[str]

    @property
    def is_escalated(self) -> bool:
        return self.mode is SessionMode.ESCALATED

    @classmethod
    def from_evaluation(
        cls,
        session: Session,
        result: EvaluationResult,
        department_id: str | None,
    ) -> AuthzContext:
        return cls(
            user_id=session.user_id,
            department_id=department_id,
            mode=session.mode,
            escalated_roles=frozenset(session.escalated_roles),
            granted_rights=frozenset(result.granted_rights),
            denied_rights=frozenset(result.denied_rights),
        )
