from __future__ import annotations

EXIT_GENERAL = 1
EXIT_NOT_FOUND = 66
EXIT_NETWORK = 69
EXIT_CONFIG = 78


class AgentdockError(RuntimeError):
    code = "ERROR"
    exit_code = EXIT_GENERAL


class ValidationError(AgentdockError):
    code = "VALIDATION_ERROR"


class ConfigError(AgentdockError):
    code = "CONFIG_ERROR"
    exit_code = EXIT_CONFIG


class NotFoundError(AgentdockError):
    code = "NOT_FOUND"
    exit_code = EXIT_NOT_FOUND


class NetworkError(AgentdockError):
    code = "NETWORK_ERROR"
    exit_code = EXIT_NETWORK


class ConflictError(AgentdockError):
    code = "CONFLICT"

    def __init__(self, message: str, conflicts: list[str] | None = None) -> None:
        super().__init__(message)
        self.conflicts = list(conflicts or [])


class IntegrityError(AgentdockError):
    code = "INTEGRITY_ERROR"

    def __init__(self, qualified_name: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Integrity check failed for {qualified_name}: the registry now serves different content "
            f"for the locked version (expected hash {expected}, got {actual}).\n"
            f"Run `agentdock update {qualified_name}` to accept the new content explicitly."
        )
        self.qualified_name = qualified_name
        self.expected = expected
        self.actual = actual
