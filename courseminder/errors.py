from __future__ import annotations


class CourseminderError(Exception):
  status_code = 400

  def __init__(self, message: str, error_code: str = "COURSEMINDER_ERROR"):
    super().__init__(message)
    self.message = message
    self.error_code = error_code


class PolicyValidationError(CourseminderError):
  status_code = 422

  def __init__(self, message: str, error_code: str = "POLICY_INVALID"):
    super().__init__(message, error_code)


class PolicyConflictError(CourseminderError):
  status_code = 409

  def __init__(self, message: str, error_code: str = "POLICY_CONFLICT"):
    super().__init__(message, error_code)


class NotFoundError(CourseminderError):
  status_code = 404

  def __init__(self, message: str = "Resource not found", error_code: str = "NOT_FOUND"):
    super().__init__(message, error_code)


class InvalidTransitionError(CourseminderError):
  status_code = 409

  def __init__(self, message: str, error_code: str = "INVALID_TRANSITION"):
    super().__init__(message, error_code)


class DeliveryError(Exception):
  """Raised by an email transport when a message could not be handed off."""

  def __init__(self, message: str, *, permanent: bool = False):
    super().__init__(message)
    self.message = message
    self.permanent = permanent


class PreferenceValidationError(CourseminderError):
  status_code = 422

  def __init__(self, message: str, error_code: str = "PREFERENCES_INVALID"):
    super().__init__(message, error_code)
