class EngineError(Exception):
    pass


class InvocationError(EngineError):
    """The target could not produce an output (timeout, non-2xx, network failure)."""


class EvaluationError(EngineError):
    pass


class RuleFault(EvaluationError):
    pass


class JudgeError(EvaluationError):
    pass


class JudgeParseError(JudgeError):
    pass


class OrchestrationError(EngineError):
    """The suite or target configuration is unusable; raised before any case runs."""


class DeliveryError(EngineError):
    pass
