"""Error taxonomy for ephemeral VM provisioning.

Every error carries a short code so CLI output and logs can be grepped:
- E1xx: configuration and validation (raised before any cloud call)
- E2xx: workspace handling
- E3xx: external tool phases
- E4xx: lifecycle state machine
- E5xx: settings file
"""


class FuocoError(Exception):
    """Base exception for provisioning errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class UnknownProvider(FuocoError):
    """Provider identifier not in the catalog."""

    def __init__(self, provider: str, available: list[str]):
        self.provider = provider
        super().__init__(
            "E100",
            f"Unknown provider: {provider}. Available: {', '.join(available)}"
        )


class MissingRequiredVariable(FuocoError):
    """Template variable has no explicit value and no default."""

    def __init__(self, provider: str, name: str, sources: tuple[str, ...] = ()):
        self.provider = provider
        self.name = name
        self.sources = sources
        hint = f" (set one of: {', '.join(sources)})" if sources else ""
        super().__init__("E101", f"Missing required variable for {provider}: {name}{hint}")


class InvalidConfiguration(FuocoError):
    """Run configuration input is malformed."""

    def __init__(self, message: str):
        super().__init__("E102", message)


class WorkspacePreparationError(FuocoError):
    """Workspace could not be created or populated."""

    def __init__(self, path, reason: str):
        self.path = path
        super().__init__("E200", f"Cannot prepare workspace {path}: {reason}")


class SubprocessFailed(FuocoError):
    """Base for external tool phase failures.

    Attributes:
        phase: init, apply or destroy
        returncode: exit status of the tool (-1 if it never ran)
        output: combined stdout/stderr captured from the tool
    """

    def __init__(self, code: str, phase: str, returncode: int, output: str = ''):
        self.phase = phase
        self.returncode = returncode
        self.output = output
        super().__init__(code, f"{phase} failed (exit {returncode})")


class SubprocessInitializeFailed(SubprocessFailed):
    def __init__(self, returncode: int, output: str = ''):
        super().__init__("E300", "init", returncode, output)


class SubprocessApplyFailed(SubprocessFailed):
    def __init__(self, returncode: int, output: str = ''):
        super().__init__("E301", "apply", returncode, output)


class SubprocessDestroyFailed(SubprocessFailed):
    def __init__(self, returncode: int, output: str = ''):
        super().__init__("E302", "destroy", returncode, output)


class InterruptedDuringApply(FuocoError):
    """Signal arrived before apply reported success."""

    def __init__(self, signame: str, phase: str = 'apply'):
        self.signame = signame
        self.phase = phase
        super().__init__("E303", f"Interrupted by {signame} during {phase}")


class InvalidTransition(FuocoError):
    """Lifecycle state machine was asked for an illegal move."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__("E400", f"Invalid lifecycle transition: {current} -> {target}")


class ConfigError(FuocoError):
    """Settings file error."""

    def __init__(self, message: str):
        super().__init__("E500", message)
