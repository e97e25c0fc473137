# backend/app/models/__init__.py
from .user import User
from .two_factor import TwoFactorEnrollment, BackupCode
from .transfer import Transfer, TransferFile
from .credential import ApiKey, Webhook

__all__ = ["User", "TwoFactorEnrollment", "BackupCode", "Transfer", "TransferFile", "ApiKey", "Webhook"]
