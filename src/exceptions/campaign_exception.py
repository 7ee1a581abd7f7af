class CampaignEngineException(Exception):
    """
    This is the base exception for all campaign engine exceptions
    """
    error_code = "campaign_engine_error"

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message, self.status_code)

    def __str__(self) -> str:
        return self.message

class StoreException(CampaignEngineException):
    """
    This is the exception for all key-value store failures
    """
    error_code = "store_error"

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message=message, status_code=status_code)

class NotFoundException(CampaignEngineException):
    """
    This is the exception when a campaign, execution, template, guest or chatflow is absent
    """
    error_code = "not_found"

    def __init__(self, message: str):
        super().__init__(message=message, status_code=404)

class InvalidStateTransitionException(CampaignEngineException):
    """
    This is the exception when an action is attempted from a status that does not permit it
    """
    error_code = "invalid_state_transition"

    def __init__(self, message: str):
        super().__init__(message=message, status_code=409)

class EmptyAudienceException(CampaignEngineException):
    """
    This is the exception when a campaign start matches zero guests
    """
    error_code = "empty_audience"

    def __init__(self, message: str = "No guests match the campaign filter"):
        super().__init__(message=message, status_code=422)

class NodeExecutionFailure(CampaignEngineException):
    """
    This is the exception when a node's interpretation fails
    """
    error_code = "node_execution_failure"

    def __init__(self, message: str):
        super().__init__(message=message, status_code=500)

class NodeExecutionNotFoundException(CampaignEngineException):
    """
    This is the exception when a node history update targets an entry that was never appended
    """
    error_code = "node_execution_not_found"

    def __init__(self, message: str):
        super().__init__(message=message, status_code=500)

class ChatflowValidationException(CampaignEngineException):
    """
    This is the exception for chatflow validation errors
    """
    error_code = "chatflow_validation"

    def __init__(self, message: str, errors: list | None = None):
        self.errors = errors or []
        super().__init__(message=message, status_code=400)

class InvalidInputException(CampaignEngineException):
    """
    This is the exception for malformed caller input
    """
    error_code = "invalid_input"

    def __init__(self, message: str):
        super().__init__(message=message, status_code=400)
