"""Domain exceptions raised by the forum services.

Every exception derives from `ForumError`; the HTTP layer turns any of
them into a 400 response carrying `{"message": str(exc)}`.
"""


class ForumError(Exception):
    """Base exception for all forum domain errors."""

    pass


class NotFound(ForumError):
    """Raised when a referenced user, post, module or subject does not exist."""

    pass


class InvalidRequest(ForumError):
    """Raised when required parameters are missing or malformed."""

    pass


class DuplicateUsername(ForumError):
    def __init__(self, username: str):
        self.username = username
        super().__init__(f"The username {username} is already being used")


class DuplicateEmail(ForumError):
    def __init__(self, email: str):
        self.email = email
        super().__init__(f"The email {email} is already being used")


class UsernameTaken(ForumError):
    def __init__(self, username: str):
        self.username = username
        super().__init__("This username is already being used")


class EmailTaken(ForumError):
    def __init__(self, email: str):
        self.email = email
        super().__init__("This email is already being used")


class DuplicateSubject(ForumError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"The subject {name} already exists")


class InvalidCode(ForumError):
    """Raised when a submitted activation or reset code does not match."""

    def __init__(self):
        super().__init__("The code is wrong")


class CodeExpired(ForumError):
    def __init__(self):
        super().__init__("The code has expired")


class Forbidden(ForumError):
    """Raised when the acting user may not touch the target resource."""

    pass


class UnknownSubject(ForumError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Invalid subject {name}")


class AccessRequired(ForumError):
    def __init__(self, subject_name: str):
        self.subject_name = subject_name
        super().__init__(f"The user doesn't have access to the subject {subject_name}")


class UploadFailed(ForumError):
    def __init__(self, reason: str = ""):
        self.reason = reason
        super().__init__("Upload failed")


class NotActivated(ForumError):
    def __init__(self, username: str):
        self.username = username
        super().__init__(f"The user {username} isn't validated yet")


class InvalidCredentials(ForumError):
    def __init__(self):
        super().__init__("Invalid username or password")
