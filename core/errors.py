"""
core/errors.py -- Failure taxonomy for passkey ceremonies.

Every failure is local to one ceremony call. None of these are retried by the
service; the caller restarts the ceremony from option generation.

`code` is the stable machine-readable identifier the HTTP layer places in the
ErrorResponse envelope. The exception message is the human-readable part.
"""


class PasskeyError(Exception):
    """Base class for all ceremony failures."""

    code = "passkey_error"
    default_message = "Passkey operation failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class ChallengeNotFoundOrExpired(PasskeyError):
    """Nothing pending under the ceremony's key.

    Never issued, already consumed, swept after expiry, or overwritten by a
    later issuance under the same key.
    """

    code = "challenge_not_found"
    default_message = "Challenge not found or expired"


class VerificationFailed(PasskeyError):
    """The external verifier rejected the ceremony response."""

    code = "verification_failed"
    default_message = "Verification failed"


class UserNotFound(PasskeyError):
    code = "user_not_found"
    default_message = "User not found"


class CredentialNotFound(PasskeyError):
    code = "credential_not_found"
    default_message = "Credential not found"


class StorageFailure(PasskeyError):
    """The store could not complete an operation (I/O, constraint, backend down)."""

    code = "storage_failure"
    default_message = "Storage operation failed"


class CounterRegression(StorageFailure):
    """A counter write would have lowered the stored signature counter."""

    code = "counter_regression"
    default_message = "Signature counter would regress"
