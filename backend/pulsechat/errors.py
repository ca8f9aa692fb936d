"""
Error taxonomy shared by storage, the conversation gate and the HTTP layer.

Every error carries the HTTP status the API answers with; the app turns
them into a ``{"message": ...}`` JSON body.
"""
from __future__ import annotations


class ChatError(Exception):
    status_code = 500
    default_message = "Server error"

    def __init__(self, message: str = ""):
        self.message = message or self.default_message
        super().__init__(self.message)


# 400
class ValidationError(ChatError):
    status_code = 400
    default_message = "Invalid request"


class MessageValidationFailed(ValidationError):
    default_message = "Message content is required"


class SelfRequest(ValidationError):
    default_message = "Cannot send friend request to yourself"


class InvalidAction(ValidationError):
    default_message = "Invalid action"


# 401 / 403
class AuthError(ChatError):
    status_code = 401
    default_message = "Access token required"


class InvalidCredentials(AuthError):
    default_message = "Invalid credentials"


class TokenInvalid(AuthError):
    status_code = 403
    default_message = "Invalid or expired token"


class ForbiddenError(ChatError):
    status_code = 403
    default_message = "Forbidden"


class ConversationClosed(ForbiddenError):
    default_message = "You can only message friends"


# 404
class NotFoundError(ChatError):
    status_code = 404
    default_message = "Not found"


class UserNotFound(NotFoundError):
    default_message = "User not found"


class FriendRequestNotFound(NotFoundError):
    default_message = "Friend request not found"


class FileNotFound(NotFoundError):
    default_message = "File not found"


# conflicts answer 400 like the rest of the validation family
class ConflictError(ChatError):
    status_code = 400
    default_message = "Conflict"


class DuplicateEmail(ConflictError):
    default_message = "User already exists"


class AlreadyPending(ConflictError):
    default_message = "Friend request already sent"


class AlreadyFriends(ConflictError):
    default_message = "Already friends"


class RequestNotPending(ConflictError):
    default_message = "Friend request is no longer pending"


class StorageError(ChatError):
    status_code = 503
    default_message = "Storage unavailable"


class UploadError(ChatError):
    status_code = 400
    default_message = "File type not allowed"


class UploadTooLarge(UploadError):
    status_code = 413
    default_message = "File too large"
