"""
SSL Property Mapping.

This module is responsible for:
- Translating the generic (name, value) SSL properties of a connection into
  the native TLS property set carried by the connect options.
- Decoding password-bearing properties through the credential decoder.
- Building the `ssl.SSLContext` the protocol clients hand to paho / aiomqtt.

Unknown property names are logged at TRACE and ignored, never rejected.
"""
import logging
import os
import ssl
import tempfile
from enum import Enum
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, pkcs12

from mqtt_link.exceptions import ConfigurationError
from mqtt_link.log import TRACE
from mqtt_link.security import PasswordDecoder, decode_password

logger = logging.getLogger(__name__)

SSL_PROTOCOL = "ssl.protocol"
SSL_KEY_STORE = "ssl.keyStore"
SSL_KEY_STORE_PASSWORD = "ssl.keyStorePassword"
SSL_KEY_STORE_TYPE = "ssl.keyStoreType"
SSL_KEY_FILE = "ssl.keyFile"
SSL_TRUST_STORE = "ssl.trustStore"
SSL_TRUST_STORE_PASSWORD = "ssl.trustStorePassword"
SSL_TRUST_STORE_TYPE = "ssl.trustStoreType"
SSL_ENABLED_CIPHER_SUITES = "ssl.enabledCipherSuites"
SSL_TRUST_MANAGER = "ssl.trustManager"
SSL_KEY_MANAGER = "ssl.keyManager"
SSL_CONTEXT_PROVIDER = "ssl.contextProvider"
SSL_KEY_STORE_PROVIDER = "ssl.keyStoreProvider"
SSL_TRUST_STORE_PROVIDER = "ssl.trustStoreProvider"
SSL_VERIFY_MODE = "ssl.verifyMode"

STORE_TYPE_PEM = "PEM"
STORE_TYPE_PKCS12 = "PKCS12"

_TLS_VERSIONS = {
    "TLS": None,
    "SSL": None,
    "TLSV1": ssl.TLSVersion.TLSv1,
    "TLSV1.1": ssl.TLSVersion.TLSv1_1,
    "TLSV1.2": ssl.TLSVersion.TLSv1_2,
    "TLSV1.3": ssl.TLSVersion.TLSv1_3,
}

_VERIFY_MODES = {
    "REQUIRED": ssl.CERT_REQUIRED,
    "OPTIONAL": ssl.CERT_OPTIONAL,
    "NONE": ssl.CERT_NONE,
}

_PROVIDER_KEYS = (
    SSL_TRUST_MANAGER,
    SSL_KEY_MANAGER,
    SSL_CONTEXT_PROVIDER,
    SSL_KEY_STORE_PROVIDER,
    SSL_TRUST_STORE_PROVIDER,
)


class SslProperty(str, Enum):
    """The SSL property names a connection understands."""
    PROTOCOL = "protocol"
    KEY_STORE = "keyStore"
    KEY_STORE_PASSWORD = "keyStorePassword"
    KEY_STORE_TYPE = "keyStoreType"
    KEY_FILE = "keyFile"
    TRUST_STORE = "trustStore"
    TRUST_STORE_PASSWORD = "trustStorePassword"
    TRUST_STORE_TYPE = "trustStoreType"
    ENABLED_CIPHER_SUITES = "enabledCipherSuites"
    TRUST_MANAGER = "trustManager"
    KEY_MANAGER = "keyManager"
    CONTEXT_PROVIDER = "contextProvider"
    KEY_STORE_PROVIDER = "keyStoreProvider"
    TRUST_STORE_PROVIDER = "trustStoreProvider"
    VERIFY_MODE = "verifyMode"
    DEFAULT = "default"

    @classmethod
    def get_ignore_case(cls, name: str) -> "SslProperty":
        for prop in cls:
            if prop is not cls.DEFAULT and prop.value.lower() == name.lower():
                return prop
        logger.log(TRACE, f"Unsupported SSL Property {name}")
        return cls.DEFAULT


# (native key, value needs decoding) per recognised property
_NATIVE_KEYS: Dict[SslProperty, Tuple[str, bool]] = {
    SslProperty.PROTOCOL: (SSL_PROTOCOL, False),
    SslProperty.KEY_STORE: (SSL_KEY_STORE, False),
    SslProperty.KEY_STORE_PASSWORD: (SSL_KEY_STORE_PASSWORD, True),
    SslProperty.KEY_STORE_TYPE: (SSL_KEY_STORE_TYPE, False),
    SslProperty.KEY_FILE: (SSL_KEY_FILE, False),
    SslProperty.TRUST_STORE: (SSL_TRUST_STORE, False),
    SslProperty.TRUST_STORE_PASSWORD: (SSL_TRUST_STORE_PASSWORD, True),
    SslProperty.TRUST_STORE_TYPE: (SSL_TRUST_STORE_TYPE, False),
    SslProperty.ENABLED_CIPHER_SUITES: (SSL_ENABLED_CIPHER_SUITES, False),
    SslProperty.TRUST_MANAGER: (SSL_TRUST_MANAGER, False),
    SslProperty.KEY_MANAGER: (SSL_KEY_MANAGER, False),
    SslProperty.CONTEXT_PROVIDER: (SSL_CONTEXT_PROVIDER, False),
    SslProperty.KEY_STORE_PROVIDER: (SSL_KEY_STORE_PROVIDER, False),
    SslProperty.TRUST_STORE_PROVIDER: (SSL_TRUST_STORE_PROVIDER, False),
    SslProperty.VERIFY_MODE: (SSL_VERIFY_MODE, False),
}

Mapper = Callable[[Dict[str, str], str], Dict[str, str]]


def _setter(native_key: str, decode: bool, decoder: PasswordDecoder) -> Mapper:
    def apply(properties: Dict[str, str], value: str) -> Dict[str, str]:
        properties[native_key] = decoder(value) if decode else value
        return properties
    return apply


def _ignore(properties: Dict[str, str], value: str) -> Dict[str, str]:
    return properties


def mapping_table(decoder: PasswordDecoder = decode_password) -> Dict[SslProperty, Mapper]:
    """Returns the dispatch table from property to mapping function."""
    table: Dict[SslProperty, Mapper] = {
        prop: _setter(native_key, decode, decoder) for prop, (native_key, decode) in _NATIVE_KEYS.items()
    }
    table[SslProperty.DEFAULT] = _ignore
    return table


def apply_ssl_properties(
    pairs: Iterable[Tuple[str, str]],
    target: Optional[Dict[str, str]] = None,
    decoder: PasswordDecoder = decode_password,
) -> Dict[str, str]:
    """
    Writes the native key of every recognised property into target.

    Raises PasswordError if a password-bearing value cannot be decoded.
    """
    properties = {} if target is None else target
    table = mapping_table(decoder)
    for name, value in pairs:
        properties = table[SslProperty.get_ignore_case(name)](properties, value)
    return properties


def _load_pkcs12(path: str, password: Optional[str]):
    with open(path, "rb") as f:
        data = f.read()
    try:
        return pkcs12.load_key_and_certificates(data, password.encode("utf-8") if password else None)
    except ValueError as e:
        raise ConfigurationError(f"Could not open PKCS12 store {path}: {e}") from e


def _load_trust_store(context: ssl.SSLContext, properties: Mapping[str, str]):
    trust_store = properties.get(SSL_TRUST_STORE)
    if not trust_store:
        context.load_default_certs()
        return

    store_type = properties.get(SSL_TRUST_STORE_TYPE, STORE_TYPE_PEM).upper()
    if store_type == STORE_TYPE_PEM:
        context.load_verify_locations(cafile=trust_store)
    elif store_type == STORE_TYPE_PKCS12:
        _, cert, additional = _load_pkcs12(trust_store, properties.get(SSL_TRUST_STORE_PASSWORD))
        certs = ([cert] if cert is not None else []) + list(additional or [])
        if not certs:
            raise ConfigurationError(f"Trust store {trust_store} holds no certificates")
        context.load_verify_locations(cadata="".join(c.public_bytes(Encoding.PEM).decode("ascii") for c in certs))
    else:
        raise ConfigurationError(f"Unsupported trust store type: {store_type}")


def _load_key_store(context: ssl.SSLContext, properties: Mapping[str, str]):
    key_store = properties.get(SSL_KEY_STORE)
    if not key_store:
        return

    password = properties.get(SSL_KEY_STORE_PASSWORD)
    store_type = properties.get(SSL_KEY_STORE_TYPE, STORE_TYPE_PEM).upper()
    if store_type == STORE_TYPE_PEM:
        context.load_cert_chain(certfile=key_store, keyfile=properties.get(SSL_KEY_FILE), password=password)
        return
    if store_type != STORE_TYPE_PKCS12:
        raise ConfigurationError(f"Unsupported key store type: {store_type}")

    key, cert, additional = _load_pkcs12(key_store, password)
    if key is None or cert is None:
        raise ConfigurationError(f"Key store {key_store} holds no private key and certificate")
    pem = key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())
    pem += b"".join(c.public_bytes(Encoding.PEM) for c in [cert] + list(additional or []))
    # load_cert_chain only reads from files
    fd, path = tempfile.mkstemp(suffix=".pem")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(pem)
        context.load_cert_chain(certfile=path)
    finally:
        os.remove(path)


def create_ssl_context(properties: Optional[Mapping[str, str]]) -> ssl.SSLContext:
    """
    Builds the client TLS context from a native SSL property set.

    An empty or missing property set gives a default verifying context.
    """
    properties = properties or {}
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)

    protocol = properties.get(SSL_PROTOCOL)
    if protocol:
        if protocol.upper() not in _TLS_VERSIONS:
            raise ConfigurationError(f"Unsupported SSL protocol: {protocol}")
        minimum = _TLS_VERSIONS[protocol.upper()]
        if minimum is not None:
            context.minimum_version = minimum

    verify_mode = properties.get(SSL_VERIFY_MODE, "REQUIRED").upper()
    if verify_mode not in _VERIFY_MODES:
        raise ConfigurationError(f"Unsupported verify mode: {verify_mode}")
    if _VERIFY_MODES[verify_mode] == ssl.CERT_NONE:
        context.check_hostname = False
    context.verify_mode = _VERIFY_MODES[verify_mode]

    # Algorithm and provider names have no ssl module counterpart
    for key in _PROVIDER_KEYS:
        if key in properties:
            logger.log(TRACE, f"Not applied to the TLS context: {key}={properties[key]}")

    ciphers = properties.get(SSL_ENABLED_CIPHER_SUITES)
    if ciphers:
        try:
            context.set_ciphers(":".join(c.strip() for c in ciphers.replace(",", ":").split(":") if c.strip()))
        except ssl.SSLError as e:
            raise ConfigurationError(f"No usable cipher in {ciphers}") from e

    try:
        _load_trust_store(context, properties)
        _load_key_store(context, properties)
    except (OSError, ssl.SSLError) as e:
        raise ConfigurationError(f"Could not load TLS material: {e}") from e
    return context
