"""Deploy key generation."""

from __future__ import annotations

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .fs import utcnow_iso
from .models import GitAuth


KEY_COMMENT = "branchsync"


def generate_deploy_key(comment: str = KEY_COMMENT) -> GitAuth:
    """Generate an Ed25519 key pair in OpenSSH format."""
    private_key = ed25519.Ed25519PrivateKey.generate()
    private_text = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_text = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode("ascii")
    if comment:
        public_text = f"{public_text} {comment}"
    return GitAuth(
        public_key=public_text,
        private_key=private_text,
        generated_at=utcnow_iso(),
    )
