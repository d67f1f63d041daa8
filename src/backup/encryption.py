"""GPG encryption of backup artifacts."""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass

from src.backup.backup_config import GPG_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

# (stderr fragment, hint appended to the error message)
_GPG_HINTS = (
    ("skipped: No data",
     "The recipient key is missing or not trusted. Check it with "
     "'gpg --list-keys <recipient>' or generate a new key."),
    ("No public key",
     "The recipient key is missing from the keyring. Import it or "
     "correct the configured gpg_recipient."),
    ("error retrieving",
     "Key lookup on the key server failed. Import the key locally and "
     "run 'gpg --update-trustdb'."),
    ("ermission denied",
     "Cannot write the encrypted file. Check backup directory permissions "
     "and free disk space."),
)


@dataclass
class EncryptionResult:
    success: bool
    path: str | None = None
    error: str | None = None


class GpgEncryptor:
    """Encrypts files for a single GPG recipient."""

    def __init__(
        self,
        recipient: str,
        gpg_binary: str = "gpg",
        timeout: int = GPG_TIMEOUT_SECONDS,
    ):
        self.recipient = recipient
        self.gpg_binary = gpg_binary
        self.timeout = timeout

    def is_available(self) -> bool:
        return shutil.which(self.gpg_binary) is not None

    def encrypt_file(self, file_path: str) -> EncryptionResult:
        """Write ``<file_path>.gpg``. Already-encrypted input is returned as is."""
        if not os.path.isfile(file_path):
            return EncryptionResult(success=False, error=f"File not found: {file_path}")

        if file_path.endswith(".gpg"):
            logger.warning("File is already encrypted, skipping: %s",
                           os.path.basename(file_path))
            return EncryptionResult(success=True, path=file_path)

        if not self.recipient:
            return EncryptionResult(success=False, error="GPG recipient not configured")

        if not self.is_available():
            return EncryptionResult(
                success=False,
                error=f"{self.gpg_binary} is not available on this system",
            )

        encrypted = file_path + ".gpg"
        cmd = [
            self.gpg_binary,
            "--batch", "--yes",
            "--trust-model", "always",
            "--encrypt",
            "--recipient", self.recipient,
            "--output", encrypted,
            file_path,
        ]

        try:
            proc = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return self._failed(f"gpg timed out after {self.timeout}s")
        except OSError as exc:
            return self._failed(str(exc))

        if proc.returncode != 0:
            stderr = proc.stderr.strip()
            message = f"GPG encryption failed for recipient '{self.recipient}': {stderr}"
            for fragment, hint in _GPG_HINTS:
                if fragment in stderr:
                    message = f"{message}. {hint}"
                    break
            return self._failed(message)

        if not os.path.isfile(encrypted):
            return self._failed("GPG reported success but no output file was created")

        logger.info("Encrypted %s for %s", os.path.basename(file_path), self.recipient)
        return EncryptionResult(success=True, path=encrypted)

    @staticmethod
    def _failed(error: str) -> EncryptionResult:
        logger.error("GPG encryption failed: %s", error)
        return EncryptionResult(success=False, error=error)
