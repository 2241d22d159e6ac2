"""Error taxonomy for the simulation control core."""


class ControlError(Exception):
    """Base class for control-core failures."""


class NotFoundError(ControlError):
    """Referenced alert, analysis, or operator does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} '{identifier}' not found")
        self.kind = kind
        self.identifier = identifier


class TransientStoreError(ControlError):
    """State store could not be reached or the statement failed."""


class MalformedRecordError(ControlError):
    """A historical record could not be parsed."""


class RunError(ControlError):
    """One simulation tick failed."""


class OperatorRoleError(ControlError):
    """Operator's stored role does not permit the requested change."""

    def __init__(self, operator_id: str, role: str) -> None:
        super().__init__(f"operator '{operator_id}' with role '{role}' cannot run continuous simulation")
        self.operator_id = operator_id
        self.role = role
