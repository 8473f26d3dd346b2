"""
Exception types shared by the resi sync core
"""


class ResiError(Exception):
    """Base error for resi operations"""


class ResiValidationError(ResiError):
    """Input rejected before anything is enqueued (user-facing message)"""


class ExpeditionNotFoundError(ResiValidationError):
    """Expedition record needed by an operation cannot be found anywhere"""

    def __init__(self, resi_number):
        self.resi_number = resi_number
        super().__init__(
            f"Gagal mendapatkan data ekspedisi untuk resi {resi_number}: Data tidak ditemukan di database."
        )


class GatewayError(ResiError):
    """Remote backend answered with an error or could not be reached"""

    def __init__(self, message, status_code=None, code=None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class PendingStoreError(ResiError):
    """Local pending-operation storage is unusable even after reinitialising"""
