"""
Defines project-specific exception classes.
"""
from typing import Optional, Sequence


class GateError(Exception):
    """Base class for all custom exceptions in Cloudflare Gate."""
    pass


class ConfigurationError(GateError):
    """Raised when loading or validating the configuration fails."""
    pass


# ── Verification ─────────────────────────────────────────────────────────


class VerificationError(GateError):
    """Raised internally when an Access token cannot be verified.

    Never escapes :func:`cloudflare_gate.access.verifier.verify_token`;
    the message is kept as the failure reason for logging.
    """
    pass


class MalformedTokenError(VerificationError):
    """The token is not a well-formed compact JWT."""
    pass


class UnsupportedAlgorithmError(VerificationError):
    """The token names an algorithm outside the accepted set."""
    pass


class KeyResolutionError(VerificationError):
    """The signing key could not be resolved."""
    pass


class KeyNotFoundError(KeyResolutionError):
    """The key id is unknown, even after consulting the key endpoint."""

    def __init__(self, kid: str):
        self.kid = kid
        super().__init__(f"Signing key not found: {kid}")


class JWKSFetchError(KeyResolutionError):
    """The key set could not be fetched or parsed."""

    def __init__(self, url: str, orig_exc: Optional[Exception] = None):
        self.url = url
        self.orig_exc = orig_exc
        msg = f"Failed to fetch signing keys from {url}"
        if orig_exc:
            msg += f": {orig_exc}"
        super().__init__(msg)


class SignatureError(VerificationError):
    """The signature does not verify against the resolved key."""
    pass


class ClaimsError(VerificationError):
    """The token claims (issuer, expiry, audience, identity) are not acceptable."""
    pass


# ── Connector supervision ────────────────────────────────────────────────


class ConnectorStartError(GateError):
    """
    Raised when the connector process cannot be confirmed ready.

    Carries the output lines captured before the failure; they are
    appended to the message for diagnostics.
    """

    def __init__(self, message: str, log_lines: Sequence[str] = ()):
        self.reason = message
        self.log_lines = list(log_lines)
        full_msg = message
        if self.log_lines:
            full_msg += "\n" + "\n".join(self.log_lines)
        super().__init__(full_msg)


class ConnectorSpawnError(ConnectorStartError):
    """The connector executable could not be launched."""

    def __init__(self, binary: str, orig_exc: Exception):
        self.binary = binary
        self.orig_exc = orig_exc
        super().__init__(f"failed to launch connector '{binary}': {orig_exc}")


class ConnectorExitedError(ConnectorStartError):
    """The connector exited before registering a tunnel connection."""

    def __init__(
        self,
        returncode: Optional[int],
        signal_name: Optional[str] = None,
        log_lines: Sequence[str] = (),
    ):
        self.returncode = returncode
        self.signal_name = signal_name
        status = "null" if returncode is None else str(returncode)
        if signal_name:
            status += f"/{signal_name}"
        super().__init__(
            f"connector exited before tunnel registered ({status})", log_lines
        )


class ConnectorTimeoutError(ConnectorStartError):
    """The connector did not register a tunnel connection in time."""

    def __init__(self, timeout: float, log_lines: Sequence[str] = ()):
        self.timeout = timeout
        super().__init__(
            f"connector did not register within timeout ({timeout:g}s)", log_lines
        )


class ConnectorInstallError(ConnectorStartError):
    """No connector executable was found and downloading one failed."""
    pass
