"""Resolution of plaintext connection secrets for a host.

Resolution order by authentication mode:

- PASSWORD: the host's own password
- SSH_KEY: the linked credential's private key, plus its passphrase
- CREDENTIAL: the linked credential's private key if present, otherwise its
  password; the credential's username overrides the host's
"""

from .crypto import SecretCipher
from .exceptions import MissingCredential
from .types import AuthMode, ConnectionSecrets, Host


class CredentialResolver:
    """Decrypts the secret material a host needs for its auth mode.

    Attributes:
        cipher: Cipher used to decrypt stored secrets
    """

    def __init__(self, cipher: SecretCipher) -> None:
        self.cipher = cipher

    def resolve(self, host: Host) -> ConnectionSecrets:
        """Resolve the secrets for one host.

        Args:
            host: Host record with encrypted fields

        Returns:
            ConnectionSecrets with plaintext values

        Raises:
            MissingCredential: If the mode's required secret is absent
            DecryptionError: If a stored value cannot be decrypted
        """
        credential = host.credential

        if host.auth_mode is AuthMode.PASSWORD:
            if not host.password:
                raise MissingCredential(host.id, host.auth_mode.value, "password")
            return ConnectionSecrets(
                username=host.username,
                password=self.cipher.decrypt(host.password),
            )

        if host.auth_mode is AuthMode.SSH_KEY:
            if credential is None or not credential.private_key:
                raise MissingCredential(host.id, host.auth_mode.value, "private key")
            return ConnectionSecrets(
                username=host.username,
                private_key=self.cipher.decrypt(credential.private_key),
                passphrase=self._optional(credential.passphrase),
            )

        # CREDENTIAL
        if credential is None:
            raise MissingCredential(host.id, host.auth_mode.value, "linked credential")

        username = credential.username or host.username
        if credential.private_key:
            return ConnectionSecrets(
                username=username,
                private_key=self.cipher.decrypt(credential.private_key),
                passphrase=self._optional(credential.passphrase),
            )
        if credential.password:
            return ConnectionSecrets(
                username=username,
                password=self.cipher.decrypt(credential.password),
            )
        raise MissingCredential(host.id, host.auth_mode.value, "private key or password")

    def _optional(self, value: str | None) -> str | None:
        return self.cipher.decrypt(value) if value else None
