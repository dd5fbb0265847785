from typing import Optional


class BudgetError(ValueError):
    pass


class ValidationError(BudgetError):
    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(ValidationError):
    def __init__(self, resource: str, resource_id: Optional[str] = None) -> None:
        if resource_id:
            message = f"{resource} with id {resource_id} not found"
        else:
            message = f"{resource} not found"
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class ReadOnlyError(ValidationError):
    def __init__(self, month: str) -> None:
        super().__init__(f"Month {month} is read-only. Unlock it to make changes.")
        self.month = month


class ConflictError(BudgetError):
    pass
