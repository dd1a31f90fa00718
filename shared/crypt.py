"""
RSA and AES primitives for the Health Status layer.

Records are protected with hybrid encryption: a random AES key encrypts the
payload and the recipient's RSA public key wraps the AES key. This module only
provides the primitives; the key-wrapping protocol lives in the record codec.
"""

import base64
import os
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

AES_KEY_SIZE = 32
AES_BLOCK_SIZE = 16
RSA_KEY_SIZE = 2048

PrivateKey = rsa.RSAPrivateKey
PublicKey = rsa.RSAPublicKey


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None
    )


def generate_private_key(key_size: int = RSA_KEY_SIZE) -> PrivateKey:
    """
    Generate a fresh RSA private key.

    Args:
        key_size: Modulus size in bits

    Returns:
        RSA private key
    """
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def rsa_encrypt(data: bytes, public_key: PublicKey) -> str:
    """
    Encrypt bytes under an RSA public key.

    Args:
        data: Plain bytes, at most a few hundred bytes (an AES key)
        public_key: Recipient public key

    Returns:
        Base64 encoded ciphertext
    """
    encrypted = public_key.encrypt(data, _oaep())
    return base64.b64encode(encrypted).decode("ascii")


def rsa_decrypt(encrypted: str, private_key: PrivateKey) -> bytes:
    """
    Decrypt base64 RSA ciphertext with a private key.

    Args:
        encrypted: Base64 encoded ciphertext
        private_key: Recipient private key

    Returns:
        Plain bytes
    """
    return private_key.decrypt(base64.b64decode(encrypted), _oaep())


def aes_random_key() -> bytes:
    """Generate a random AES-256 key."""
    return os.urandom(AES_KEY_SIZE)


def aes_encrypt(plain: Union[str, bytes], key: bytes) -> str:
    """
    Encrypt with AES-CBC and PKCS7 padding.

    The random IV is prepended to the ciphertext before base64 encoding.

    Args:
        plain: Text or bytes to encrypt
        key: AES key

    Returns:
        Base64 encoded IV + ciphertext
    """
    if isinstance(plain, str):
        plain = plain.encode("utf-8")
    iv = os.urandom(AES_BLOCK_SIZE)
    padder = sym_padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plain) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    encrypted = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(iv + encrypted).decode("ascii")


def aes_decrypt(encrypted: str, key: bytes) -> str:
    """
    Decrypt AES-CBC ciphertext produced by aes_encrypt.

    Args:
        encrypted: Base64 encoded IV + ciphertext
        key: AES key

    Returns:
        Decrypted UTF-8 text
    """
    raw = base64.b64decode(encrypted)
    iv, body = raw[:AES_BLOCK_SIZE], raw[AES_BLOCK_SIZE:]
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(body) + decryptor.finalize()
    unpadder = sym_padding.PKCS7(algorithms.AES.block_size).unpadder()
    return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")


def public_key_to_pem(public_key: PublicKey) -> str:
    """Encode a public key as PKCS1 PEM text."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.PKCS1
    ).decode("ascii")


def public_key_from_pem(pem: str) -> PublicKey:
    """Parse a PEM encoded public key (PKCS1 or SubjectPublicKeyInfo)."""
    return serialization.load_pem_public_key(pem.encode("ascii"))


def private_key_to_pem(private_key: PrivateKey) -> str:
    """Encode a private key as unencrypted PKCS8 PEM text."""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode("ascii")


def private_key_from_pem(pem: str, password: Optional[bytes] = None) -> PrivateKey:
    """Parse a PEM encoded private key."""
    return serialization.load_pem_private_key(pem.encode("ascii"), password=password)


@dataclass(frozen=True)
class KeyPair:
    """RSA key pair of a record subject."""
    private_key: PrivateKey
    public_key: PublicKey

    @classmethod
    def generate(cls, key_size: int = RSA_KEY_SIZE) -> "KeyPair":
        private_key = generate_private_key(key_size)
        return cls(private_key=private_key, public_key=private_key.public_key())

    @classmethod
    def from_private_pem(cls, pem: str) -> "KeyPair":
        private_key = private_key_from_pem(pem)
        return cls(private_key=private_key, public_key=private_key.public_key())
