from twofactor.models.two_factor_credential import TwoFactorCredential

__all__ = [
    "TwoFactorCredential",
]
