"""
Credential lifecycle.

    NotConfigured --setup--> PendingVerification --verify(enable)--> Enabled
    Enabled --verify(disable)--> Disabled --setup--> PendingVerification

Setup is handled by the provisioning path; this module decides what a
successful Verify is allowed to change.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from twofactor.core.exceptions import InvalidTransitionError, NotConfiguredError
from twofactor.models.two_factor_credential import TwoFactorCredential


class CredentialState(str, Enum):
    NOT_CONFIGURED = "not_configured"
    PENDING_VERIFICATION = "pending_verification"
    ENABLED = "enabled"
    DISABLED = "disabled"


class VerifyAction(str, Enum):
    ENABLE = "enable"
    DISABLE = "disable"
    CHALLENGE = "challenge"

    @classmethod
    def from_wire(cls, value: str | None) -> "VerifyAction":
        """Map the request's ``action`` field; absent or "verify" is a plain challenge."""
        match value:
            case "enable":
                return cls.ENABLE
            case "disable":
                return cls.DISABLE
            case None | "verify":
                return cls.CHALLENGE
            case _:
                raise ValueError(f"unknown verify action: {value!r}")


@dataclass(frozen=True)
class Transition:
    target: CredentialState
    # Column updates applied atomically with the rest of the write
    changes: dict[str, Any] = field(default_factory=dict)


def state_of(credential: TwoFactorCredential | None) -> CredentialState:
    if credential is None:
        return CredentialState.NOT_CONFIGURED
    if credential.totp_enabled:
        return CredentialState.ENABLED
    if credential.totp_secret:
        return CredentialState.PENDING_VERIFICATION
    return CredentialState.DISABLED


def plan_transition(state: CredentialState, action: VerifyAction) -> Transition:
    """
    Decide the effect of a successful verification.

    Raises:
        NotConfiguredError: No secret to verify against
        InvalidTransitionError: Action not allowed from ``state``
    """
    match state:
        case CredentialState.NOT_CONFIGURED | CredentialState.DISABLED:
            raise NotConfiguredError()
        case CredentialState.PENDING_VERIFICATION:
            match action:
                case VerifyAction.ENABLE:
                    return Transition(CredentialState.ENABLED, {"totp_enabled": True})
                case VerifyAction.CHALLENGE:
                    return Transition(state)
                case VerifyAction.DISABLE:
                    raise InvalidTransitionError("2FA is not enabled.")
        case CredentialState.ENABLED:
            match action:
                case VerifyAction.ENABLE | VerifyAction.CHALLENGE:
                    return Transition(state)
                case VerifyAction.DISABLE:
                    return Transition(
                        CredentialState.DISABLED,
                        {"totp_enabled": False, "totp_secret": None, "backup_codes": []},
                    )
    raise AssertionError(f"unhandled transition: {state} / {action}")
