import datetime
import ssl

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from mqtt_link.connection.ssl_properties import (
    SSL_CONTEXT_PROVIDER,
    SSL_KEY_MANAGER,
    SSL_KEY_STORE,
    SSL_KEY_STORE_PASSWORD,
    SSL_KEY_STORE_PROVIDER,
    SSL_KEY_STORE_TYPE,
    SSL_PROTOCOL,
    SSL_TRUST_MANAGER,
    SSL_TRUST_STORE,
    SSL_TRUST_STORE_PASSWORD,
    SSL_TRUST_STORE_PROVIDER,
    SSL_TRUST_STORE_TYPE,
    SSL_VERIFY_MODE,
    SslProperty,
    apply_ssl_properties,
    create_ssl_context,
    mapping_table,
)
from mqtt_link.exceptions import ConfigurationError, PasswordError
from mqtt_link.log import TRACE
from mqtt_link.security import encode_password

"""
SSL Property Mapping Tests.
Tests the translation of generic SSL properties into the native property set,
and the TLS context built from that set.
"""

@pytest.fixture(scope="module")
def self_signed():
    """A throwaway CA certificate and its private key."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = x509.CertificateBuilder() \
        .subject_name(subject) \
        .issuer_name(issuer) \
        .public_key(private_key.public_key()) \
        .serial_number(x509.random_serial_number()) \
        .not_valid_before(now) \
        .not_valid_after(now + datetime.timedelta(days=1)) \
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True) \
        .sign(private_key, hashes.SHA256())
    return private_key, cert


def test_get_ignore_case_matches_any_case():
    """Property names are matched case-insensitively."""
    assert SslProperty.get_ignore_case("KEYSTORE") is SslProperty.KEY_STORE
    assert SslProperty.get_ignore_case("truststorepassword") is SslProperty.TRUST_STORE_PASSWORD
    assert SslProperty.get_ignore_case("Protocol") is SslProperty.PROTOCOL


def test_get_ignore_case_unknown_is_default_and_traced(caplog):
    """Unknown names resolve to DEFAULT and are only logged at TRACE."""
    with caplog.at_level(TRACE, logger="mqtt_link.connection.ssl_properties"):
        assert SslProperty.get_ignore_case("fooProvider") is SslProperty.DEFAULT

    records = [r for r in caplog.records if "Unsupported SSL Property fooProvider" in r.getMessage()]
    assert len(records) == 1
    assert records[0].levelno == TRACE


def test_two_recognised_properties_give_two_native_keys():
    """A keyStore and an encoded keyStorePassword map to exactly two native entries."""
    properties = apply_ssl_properties([
        ("keyStore", "/path/to/client.p12"),
        ("keyStorePassword", encode_password("s3cret")),
    ])

    assert properties == {
        SSL_KEY_STORE: "/path/to/client.p12",
        SSL_KEY_STORE_PASSWORD: "s3cret",
    }


def test_unknown_properties_do_not_change_the_result():
    """Appending unknown names leaves the native set untouched."""
    pairs = [("trustStore", "/ca.pem"), ("trustStorePassword", "plain")]
    expected = apply_ssl_properties(pairs)

    assert apply_ssl_properties(pairs + [("bogusManager", "SunX509"), ("bogus", "x")]) == expected
    assert expected == {SSL_TRUST_STORE: "/ca.pem", SSL_TRUST_STORE_PASSWORD: "plain"}


def test_only_password_properties_are_decoded():
    """Non password values are copied as is, even if they look encoded."""
    encoded = encode_password("value")
    properties = apply_ssl_properties([("keyStoreType", encoded), ("trustStorePassword", encoded)])

    assert properties[SSL_KEY_STORE_TYPE] == encoded
    assert properties[SSL_TRUST_STORE_PASSWORD] == "value"


def test_malformed_password_raises():
    """A malformed encoded secret fails the mapping."""
    with pytest.raises(PasswordError):
        apply_ssl_properties([("keyStorePassword", "PW:not base64!")])


def test_custom_decoder_is_used():
    """The decoder is a seam: any callable can stand in."""
    properties = apply_ssl_properties([("keyStorePassword", "abc")], decoder=str.upper)
    assert properties[SSL_KEY_STORE_PASSWORD] == "ABC"


def test_mapping_functions_write_into_given_target():
    """Mapping functions only add their own key to the set they are given."""
    table = mapping_table()
    target = {"existing": "1"}

    result = table[SslProperty.PROTOCOL](target, "TLSv1.2")
    result = table[SslProperty.DEFAULT](result, "ignored")

    assert result == {"existing": "1", SSL_PROTOCOL: "TLSv1.2"}


def test_default_context_verifies_peers():
    """No properties give a verifying client context."""
    context = create_ssl_context(None)

    assert isinstance(context, ssl.SSLContext)
    assert context.verify_mode == ssl.CERT_REQUIRED
    assert context.check_hostname is True


def test_verify_mode_none_disables_verification():
    context = create_ssl_context({SSL_VERIFY_MODE: "none"})

    assert context.verify_mode == ssl.CERT_NONE
    assert context.check_hostname is False


def test_unknown_verify_mode_raises():
    with pytest.raises(ConfigurationError):
        create_ssl_context({SSL_VERIFY_MODE: "sometimes"})


def test_trust_manager_algorithm_keeps_verification():
    """A trust manager algorithm name is carried, not used as a verify mode."""
    context = create_ssl_context({SSL_TRUST_MANAGER: "PKIX"})

    assert context.verify_mode == ssl.CERT_REQUIRED
    assert context.check_hostname is True


@pytest.mark.parametrize("name, value, native_key", [
    ("keyManager", "SunX509", SSL_KEY_MANAGER),
    ("trustManager", "PKIX", SSL_TRUST_MANAGER),
    ("contextProvider", "SunJSSE", SSL_CONTEXT_PROVIDER),
    ("keyStoreProvider", "SUN", SSL_KEY_STORE_PROVIDER),
    ("trustStoreProvider", "SUN", SSL_TRUST_STORE_PROVIDER),
])
def test_algorithm_and_provider_names_map_to_one_entry(name, value, native_key):
    assert apply_ssl_properties([(name, value)]) == {native_key: value}


def test_provider_names_do_not_break_the_context(caplog):
    """Provider names are logged at TRACE when the TLS context is built."""
    properties = apply_ssl_properties([
        ("keyManager", "SunX509"),
        ("contextProvider", "SunJSSE"),
        ("keyStoreProvider", "SUN"),
        ("trustStoreProvider", "SUN"),
    ])

    with caplog.at_level(TRACE, logger="mqtt_link.connection.ssl_properties"):
        context = create_ssl_context(properties)

    assert context.verify_mode == ssl.CERT_REQUIRED
    assert any(SSL_CONTEXT_PROVIDER in r.getMessage() and r.levelno == TRACE for r in caplog.records)


def test_protocol_sets_minimum_version():
    context = create_ssl_context({SSL_PROTOCOL: "TLSv1.2"})
    assert context.minimum_version == ssl.TLSVersion.TLSv1_2


def test_unknown_protocol_raises():
    with pytest.raises(ConfigurationError):
        create_ssl_context({SSL_PROTOCOL: "SSLv2"})


def test_missing_trust_store_file_raises(tmp_path):
    """Unreadable TLS material is a configuration error."""
    with pytest.raises(ConfigurationError):
        create_ssl_context({SSL_TRUST_STORE: str(tmp_path / "missing.pem")})


def test_pem_trust_store_is_loaded(tmp_path, self_signed):
    _, cert = self_signed
    path = tmp_path / "ca.pem"
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))

    context = create_ssl_context({SSL_TRUST_STORE: str(path)})

    assert len(context.get_ca_certs()) == 1


def test_pkcs12_trust_and_key_store_are_loaded(tmp_path, self_signed):
    """PKCS12 stores are opened with their (decoded) passwords."""
    private_key, cert = self_signed
    path = tmp_path / "client.p12"
    path.write_bytes(pkcs12.serialize_key_and_certificates(
        b"client", private_key, cert, None,
        serialization.BestAvailableEncryption(b"changeit"),
    ))
    properties = apply_ssl_properties([
        ("trustStore", str(path)),
        ("trustStoreType", "PKCS12"),
        ("trustStorePassword", encode_password("changeit")),
        ("keyStore", str(path)),
        ("keyStoreType", "pkcs12"),
        ("keyStorePassword", "changeit"),
    ])

    context = create_ssl_context(properties)

    assert len(context.get_ca_certs()) == 1


def test_pkcs12_wrong_password_raises(tmp_path, self_signed):
    private_key, cert = self_signed
    path = tmp_path / "client.p12"
    path.write_bytes(pkcs12.serialize_key_and_certificates(
        b"client", private_key, cert, None,
        serialization.BestAvailableEncryption(b"changeit"),
    ))

    with pytest.raises(ConfigurationError):
        create_ssl_context({
            SSL_TRUST_STORE: str(path),
            SSL_TRUST_STORE_TYPE: "PKCS12",
            SSL_TRUST_STORE_PASSWORD: "wrong",
        })
