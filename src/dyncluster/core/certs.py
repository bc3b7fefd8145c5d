"""Deterministic certificate authorities for per-cluster TLS material.

Keys are EC P-256 keys derived from `sha256(machine_id + seed)` and
certificates are signed with RFC 6979 deterministic ECDSA, so the same
seed always yields byte-identical PEM on one machine.
"""

from __future__ import annotations

import hashlib
import ipaddress
import threading
import uuid
from datetime import datetime, timezone
from typing import ClassVar, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

NOT_BEFORE = datetime(2025, 1, 1, tzinfo=timezone.utc)
NOT_AFTER = datetime(2035, 1, 1, tzinfo=timezone.utc)
CA_SERIAL = 1
SERVER_SERIAL = 2
COMMON_NAME_PREFIX = "dinocert-"
MACHINE_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")

# Order of the P-256 group.
_P256_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551


def machine_id(paths: tuple[str, ...] = MACHINE_ID_PATHS) -> str:
    """Return a stable identifier for this machine.

    The first non-empty machine ID file in `paths` wins. Only without one
    does the hardware address stand in, and `uuid.getnode()` makes up a
    random one per process when it finds no interface.
    """
    for path in paths:
        try:
            with open(path, encoding="utf-8") as f:
                value = f.read().strip()
        except OSError:
            continue
        if value:
            return value
    return f"{uuid.getnode():012x}"


def derive_key(seed: str, machine: Optional[str] = None) -> ec.EllipticCurvePrivateKey:
    """Derive a P-256 private key from `seed` and the machine identity."""
    digest = hashlib.sha256(f"{machine or machine_id()}{seed}".encode("utf-8")).digest()
    scalar = int.from_bytes(digest, "big") % (_P256_ORDER - 1) + 1
    return ec.derive_private_key(scalar, ec.SECP256R1())


def _key_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _name(seed: str) -> x509.Name:
    return x509.Name(
        [x509.NameAttribute(NameOID.COMMON_NAME, COMMON_NAME_PREFIX + seed)]
    )


class CertAuthority:
    """
    A signing authority: a private key and its certificate.

    Parameters
    ----------
    seed : str
        Seed for key derivation and the subject common name.
    parent : CertAuthority, optional
        Issuer. The authority is self-signed when omitted.
    machine : str, optional
        Machine identity mixed into key derivation. Defaults to
        `machine_id()`.
    """

    def __init__(
        self,
        seed: str,
        parent: Optional[CertAuthority] = None,
        machine: Optional[str] = None,
    ) -> None:
        self.seed = seed
        self.machine = machine or (parent.machine if parent else machine_id())
        self.key = derive_key(seed, self.machine)

        issuer_name = parent.cert.subject if parent else _name(seed)
        issuer_key = parent.key if parent else self.key
        public_key = self.key.public_key()

        builder = (
            x509.CertificateBuilder()
            .subject_name(_name(seed))
            .issuer_name(issuer_name)
            .public_key(public_key)
            .serial_number(CA_SERIAL)
            .not_valid_before(NOT_BEFORE)
            .not_valid_after(NOT_AFTER)
            .add_extension(
                x509.BasicConstraints(ca=True, path_length=None), critical=True
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False
            )
        )
        self.cert = builder.sign(issuer_key, hashes.SHA256(), ecdsa_deterministic=True)
        self.parent = parent

    @property
    def cert_pem(self) -> bytes:
        """PEM encoded certificate."""
        return self.cert.public_bytes(serialization.Encoding.PEM)

    @property
    def key_pem(self) -> bytes:
        """PEM encoded PKCS#8 private key."""
        return _key_pem(self.key)

    def make_intermediary_ca(self, seed: str) -> CertAuthority:
        """Return a CA for `seed` signed by this authority."""
        return CertAuthority(seed, parent=self)

    def make_server_certificate(
        self,
        seed: str,
        ips: Optional[list[str]] = None,
        dns_names: Optional[list[str]] = None,
    ) -> tuple[bytes, bytes]:
        """
        Issue a server certificate.

        Parameters
        ----------
        seed : str
            Seed for the key and common name.
        ips : list[str], optional
            IP addresses to include as subject alternative names.
        dns_names : list[str], optional
            DNS names to include as subject alternative names.

        Returns
        -------
        tuple[bytes, bytes]
            `(cert_pem, key_pem)`.
        """
        key = derive_key(seed, self.machine)
        sans: list[x509.GeneralName] = [
            x509.IPAddress(ipaddress.ip_address(ip)) for ip in ips or [] if ip
        ]
        sans.extend(x509.DNSName(name) for name in dns_names or [] if name)

        builder = (
            x509.CertificateBuilder()
            .subject_name(_name(seed))
            .issuer_name(self.cert.subject)
            .public_key(key.public_key())
            .serial_number(SERVER_SERIAL)
            .not_valid_before(NOT_BEFORE)
            .not_valid_after(NOT_AFTER)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
            )
        )
        if sans:
            builder = builder.add_extension(
                x509.SubjectAlternativeName(sans), critical=False
            )
        cert = builder.sign(self.key, hashes.SHA256(), ecdsa_deterministic=True)
        return cert.public_bytes(serialization.Encoding.PEM), _key_pem(key)


class RootCertAuthority:
    """
    Process-wide root authority, created on first use.

    Deriving the root requires a machine identity lookup, so it is done
    at most once per process and cached for the life of the process.
    """

    _instance: ClassVar[Optional[CertAuthority]] = None
    _lock: ClassVar[threading.Lock] = threading.Lock()

    @classmethod
    def get_or_init(cls) -> CertAuthority:
        """Return the root authority, creating it if needed."""
        with cls._lock:
            if cls._instance is None:
                machine = machine_id()
                cls._instance = CertAuthority(machine, machine=machine)
            return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the cached authority."""
        with cls._lock:
            cls._instance = None


def cluster_ca(cluster_id: str) -> CertAuthority:
    """Return the intermediate authority for a cluster."""
    root = RootCertAuthority.get_or_init()
    return root.make_intermediary_ca(f"cluster-{cluster_id[:8]}")
