import errno
import re
import select
import socket
import sys
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from ipaddress import IPv4Address, IPv6Address, ip_address
from types import MappingProxyType
from urllib.parse import urlsplit

import click
import idna
from asn1crypto import x509 as asn1_x509
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import AuthorityInformationAccessOID, NameOID
from OpenSSL import SSL

__version__ = "2026.10.19"

DEFAULT_PORT = 443
DEFAULT_TIMEOUT = 30.0

CHAIN_SUFFIX = "_chain"

URL_PATTERN = re.compile(r"https?://\S+")

UTC_TIME_PATTERN = re.compile(r"([0-9]{2})([0-9]{2})([0-9]{2})([0-9]{2})([0-9]{2})([0-9]{2})Z")
GENERALIZED_TIME_PATTERN = re.compile(
    r"([0-9]{4})([0-9]{2})([0-9]{2})([0-9]{2})([0-9]{2})([0-9]{2})Z"
)

ACCESS_METHOD_NAMES = {
    AuthorityInformationAccessOID.OCSP: "OCSP",
    AuthorityInformationAccessOID.CA_ISSUERS: "CA Issuers",
}

KEY_USAGE_NAMES = [
    ("digital_signature", "Digital Signature"),
    ("content_commitment", "Non Repudiation"),
    ("key_encipherment", "Key Encipherment"),
    ("data_encipherment", "Data Encipherment"),
    ("key_agreement", "Key Agreement"),
    ("key_cert_sign", "Certificate Sign"),
    ("crl_sign", "CRL Sign"),
]


class InspectionError(Exception):
    """Base class for everything that can go wrong while inspecting a certificate."""


class DecodeError(InspectionError):
    pass


class TimestampParseError(InspectionError):
    pass


class MissingFieldError(InspectionError):
    def __init__(self, field: str) -> None:
        super().__init__(field)
        self.field = field

    def __str__(self) -> str:
        return f"Certificate has no {self.field}"


class PeerConnectionError(InspectionError, ConnectionError):
    """
    The peer certificate could not be retrieved.

    Carries the underlying error code (if any) in ``errno``
    and the message in ``strerror``.
    """

    def __str__(self) -> str:
        if self.errno is None:
            return str(self.strerror)
        return f"[Errno {self.errno}] {self.strerror}"


@dataclass(frozen=True)
class Host:
    host: str | IPv4Address | IPv6Address
    port: int

    def __str__(self) -> str:
        if isinstance(self.host, IPv6Address):
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    @property
    def is_ip(self) -> bool:
        return isinstance(self.host, (IPv4Address, IPv6Address))


@dataclass(frozen=True)
class InspectorConfig:
    target: Host
    timeout: float = DEFAULT_TIMEOUT
    servername: str | None = None
    send_servername: bool = True


@dataclass(frozen=True)
class CertificateRecord:
    subject_common_name: str | None
    not_before: str
    not_after: str
    serial_number_hex: str
    extensions: Mapping[str, str]

    @property
    def chain_url(self) -> str | None:
        return derive_chain_url(self.extensions.get("authorityInfoAccess"))


def parse_host_input(input: str) -> Host:
    # A bare IPv6 address can be confused
    # with a host:port combo, so let's try
    # to parse it as that first.
    try:
        return Host(ip_address(input), DEFAULT_PORT)
    except ValueError:
        pass

    parsed_host = urlsplit(input)
    if not parsed_host.netloc:
        parsed_host = urlsplit(f"//{input}")

    if not parsed_host.hostname:
        raise click.BadParameter("Invalid host specified")

    try:
        port = parsed_host.port
    except ValueError as ve:
        raise click.BadParameter("Invalid port specified") from ve

    if port is None:
        port = DEFAULT_PORT
        if parsed_host.scheme:
            try:
                port = socket.getservbyname(parsed_host.scheme)
            except OSError:
                # unknown scheme
                pass

    try:
        return Host(ip_address(parsed_host.hostname), port)
    except ValueError:
        pass

    if parsed_host.hostname.isascii():
        return Host(parsed_host.hostname, port)

    try:
        return Host(idna.encode(parsed_host.hostname).decode(), port)
    except idna.IDNAError as error:
        raise click.BadParameter(f"Invalid host name: {error}") from error


class TLSConnector:
    """
    Fetches the certificate a TLS server presents in the handshake.

    Certificate verification is turned off on purpose: we want to look
    at whatever the server sends, including self-signed and expired
    certificates, not decide whether to trust it.
    """

    def __init__(self, config: InspectorConfig) -> None:
        self.config = config

    def fetch_peer_certificate(self) -> bytes:
        """Returns the DER encoded peer certificate."""
        target = self.config.target
        deadline = time.monotonic() + self.config.timeout

        try:
            sock = self._connect(deadline)
        except OSError as error:
            code = error.errno
            if code is None and isinstance(error, TimeoutError):
                code = errno.ETIMEDOUT
            message = error.strerror or str(error) or type(error).__name__
            raise PeerConnectionError(
                code, f"Unable to connect to {target}: {message}"
            ) from error

        try:
            conn = SSL.Connection(self._make_context(), sock)
            servername = self.get_servername()
            if servername:
                conn.set_tlsext_host_name(servername.encode())
            conn.set_connect_state()

            sock.setblocking(False)
            self._handshake(conn, sock, deadline)

            cert = conn.get_peer_certificate()
            if cert is None:
                raise PeerConnectionError(None, f"{target} did not present a certificate")
            return cert.to_cryptography().public_bytes(serialization.Encoding.DER)
        finally:
            sock.close()

    def get_servername(self) -> str | None:
        if not self.config.send_servername:
            return None
        if self.config.servername:
            return self.config.servername
        # IP addresses are not permitted in servername
        # so only add if we are connecting to a DNS name.
        if self.config.target.is_ip:
            return None
        return str(self.config.target.host)

    def _connect(self, deadline: float) -> socket.socket:
        """
        Like socket.create_connection, but every address only
        gets what is left of the deadline.

        Name resolution itself is not bounded by the timeout.
        """
        target = self.config.target
        last_error: OSError | None = None
        for family, type_, proto, _, address in socket.getaddrinfo(
            str(target.host), target.port, type=socket.SOCK_STREAM
        ):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("timed out")

            sock = socket.socket(family, type_, proto)
            sock.settimeout(remaining)
            try:
                sock.connect(address)
                return sock
            except OSError as error:
                sock.close()
                last_error = error

        if last_error is None:
            raise OSError(f"getaddrinfo returned no addresses for {target.host}")
        raise last_error

    def _make_context(self) -> SSL.Context:
        ctx = SSL.Context(SSL.SSLv23_METHOD)
        ctx.set_verify(SSL.VERIFY_NONE, lambda *args: True)
        return ctx

    def _handshake(self, conn: SSL.Connection, sock: socket.socket, deadline: float) -> None:
        target = self.config.target
        while True:
            try:
                conn.do_handshake()
                return
            except SSL.WantReadError:
                readers, writers = [sock], []
            except SSL.WantWriteError:
                readers, writers = [], [sock]
            except SSL.SysCallError as error:
                code, message = error.args if len(error.args) == 2 else (None, str(error))
                raise PeerConnectionError(
                    code if isinstance(code, int) and code > 0 else None,
                    f"TLS handshake with {target} failed: {message}",
                ) from error
            except SSL.Error as error:
                raise PeerConnectionError(
                    None, f"TLS handshake with {target} failed: {error}"
                ) from error

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise PeerConnectionError(
                    errno.ETIMEDOUT, f"TLS handshake with {target} timed out"
                )
            select.select(readers, writers, [], remaining)


def parse_utc_time(value: str | bytes) -> datetime:
    """
    Parses an X.509 UTCTime (YYMMDDHHMMSSZ).

    Two digit years from 50 and up are in the 1900s,
    the rest in the 2000s (RFC 5280, section 4.1.2.5.1).
    """
    match = _match_timestamp(UTC_TIME_PATTERN, value)
    year, month, day, hour, minute, second = (int(group) for group in match.groups())
    year += 1900 if year >= 50 else 2000
    return _make_datetime(value, year, month, day, hour, minute, second)


def parse_generalized_time(value: str | bytes) -> datetime:
    """Parses an X.509 GeneralizedTime (YYYYMMDDHHMMSSZ)."""
    match = _match_timestamp(GENERALIZED_TIME_PATTERN, value)
    return _make_datetime(value, *(int(group) for group in match.groups()))


def _match_timestamp(pattern: re.Pattern, value: str | bytes) -> re.Match:
    if isinstance(value, bytes):
        try:
            value = value.decode("ascii")
        except UnicodeDecodeError as error:
            raise TimestampParseError(f"Invalid timestamp: {value!r}") from error

    match = pattern.fullmatch(value)
    if match is None:
        raise TimestampParseError(f"Invalid timestamp: {value!r}")
    return match


def _make_datetime(value: str | bytes, *fields: int) -> datetime:
    try:
        return datetime(*fields, tzinfo=timezone.utc)
    except ValueError as error:
        raise TimestampParseError(f"Invalid timestamp: {value!r} ({error})") from error


def format_timestamp(dt: datetime) -> str:
    return dt.isoformat(sep=" ")


def normalize_timestamp(value: str | bytes) -> str:
    """
    Takes a compact UTCTime, and returns it
    as "YYYY-MM-DD HH:MM:SS+00:00".
    """
    return format_timestamp(parse_utc_time(value))


def find_first_url(text: str | None) -> str | None:
    if not text:
        return None
    match = URL_PATTERN.search(text)
    return match.group(0) if match else None


def derive_chain_url(aia_text: str | None) -> str | None:
    url = find_first_url(aia_text)
    if url is None:
        return None
    return url + CHAIN_SUFFIX


def format_serial_number(serial_number: int) -> str:
    # Same as OpenSSL's serialNumberHex: upper case, whole bytes.
    digits = f"{abs(serial_number):X}"
    if len(digits) % 2:
        digits = f"0{digits}"
    return f"-{digits}" if serial_number < 0 else digits


def get_common_name(subject: x509.Name) -> str:
    attributes = subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attributes:
        raise MissingFieldError("CN")
    value = attributes[0].value
    return value.decode() if isinstance(value, bytes) else value


def get_extension_name(oid: x509.ObjectIdentifier) -> str:
    name = oid._name
    return oid.dotted_string if name == "Unknown OID" else name


def colon_hex(data: bytes) -> str:
    return ":".join(f"{byte:02X}" for byte in data)


def render_general_name(name: x509.GeneralName) -> str:
    if isinstance(name, x509.DNSName):
        return f"DNS:{name.value}"
    if isinstance(name, x509.IPAddress):
        return f"IP Address:{name.value}"
    if isinstance(name, x509.UniformResourceIdentifier):
        return f"URI:{name.value}"
    if isinstance(name, x509.RFC822Name):
        return f"email:{name.value}"
    if isinstance(name, x509.DirectoryName):
        return f"DirName:{name.value.rfc4514_string()}"
    if isinstance(name, x509.RegisteredID):
        return f"Registered ID:{name.value.dotted_string}"
    if isinstance(name, x509.OtherName):
        return f"othername:{name.type_id.dotted_string}"
    return str(name.value)


def render_key_usage(usage: x509.KeyUsage) -> str:
    names = [label for attr, label in KEY_USAGE_NAMES if getattr(usage, attr)]
    # encipher_only and decipher_only are only defined with key_agreement
    if usage.key_agreement:
        if usage.encipher_only:
            names.append("Encipher Only")
        if usage.decipher_only:
            names.append("Decipher Only")
    return ", ".join(names)


def render_extension_value(ext: x509.Extension) -> str:
    """
    Renders an extension value as text, more or
    less the way OpenSSL prints it.
    """
    value = ext.value

    if isinstance(value, (x509.AuthorityInformationAccess, x509.SubjectInformationAccess)):
        return "\n".join(
            f"{ACCESS_METHOD_NAMES.get(desc.access_method, desc.access_method.dotted_string)}"
            f" - {render_general_name(desc.access_location)}"
            for desc in value
        )
    if isinstance(value, (x509.SubjectAlternativeName, x509.IssuerAlternativeName)):
        return ", ".join(render_general_name(name) for name in value)
    if isinstance(value, x509.BasicConstraints):
        text = "CA:TRUE" if value.ca else "CA:FALSE"
        if value.path_length is not None:
            text += f", pathlen:{value.path_length}"
        return text
    if isinstance(value, x509.KeyUsage):
        return render_key_usage(value)
    if isinstance(value, x509.ExtendedKeyUsage):
        return ", ".join(get_extension_name(eku) for eku in value)
    if isinstance(value, x509.SubjectKeyIdentifier):
        return colon_hex(value.digest)
    if isinstance(value, x509.AuthorityKeyIdentifier):
        if value.key_identifier is None:
            return ""
        return f"keyid:{colon_hex(value.key_identifier)}"
    if isinstance(value, x509.CRLDistributionPoints):
        return "\n".join(
            render_general_name(name)
            for point in value
            for name in (point.full_name or [])
        )
    if isinstance(value, x509.CertificatePolicies):
        return "\n".join(
            f"Policy: {policy.policy_identifier.dotted_string}" for policy in value
        )
    if isinstance(value, x509.PrecertificateSignedCertificateTimestamps):
        return "\n".join(f"Log ID: {colon_hex(sct.log_id)}" for sct in value)
    if isinstance(value, x509.UnrecognizedExtension):
        return colon_hex(value.value)
    return str(value)


def read_validity(der: bytes) -> tuple[str, str]:
    """
    Returns the normalized not before and not after timestamps.

    cryptography hands out datetimes, so the raw
    encodings are read with asn1crypto instead.
    """
    try:
        validity = asn1_x509.Certificate.load(der)["tbs_certificate"]["validity"]
        times = (validity["not_before"], validity["not_after"])
        raw = [(t.name, t.chosen.contents) for t in times]
    except ValueError as error:
        raise DecodeError(f"Unable to read certificate validity: {error}") from error

    normalized = []
    for name, contents in raw:
        if name == "general_time":
            normalized.append(format_timestamp(parse_generalized_time(contents)))
        else:
            normalized.append(normalize_timestamp(contents))
    return normalized[0], normalized[1]


def render_raw_extension(ext: asn1_x509.Extension) -> str:
    """
    Renders an extension straight from its DER. The Authority
    Information Access URIs are kept readable, everything else
    is shown as hex.
    """
    if ext["extn_id"].native != "authority_information_access":
        return colon_hex(ext["extn_value"].contents)

    lines = []
    for desc in ext["extn_value"].parsed:
        method_oid = desc["access_method"].dotted
        method = ACCESS_METHOD_NAMES.get(x509.ObjectIdentifier(method_oid), method_oid)
        location = desc["access_location"]
        if location.name == "uniform_resource_identifier":
            lines.append(f"{method} - URI:{location.native}")
        else:
            lines.append(f"{method} - {colon_hex(location.chosen.dump())}")
    return "\n".join(lines)


def read_raw_extensions(der: bytes) -> dict[str, str]:
    """
    Enumerates the extensions with asn1crypto, for certificates
    carrying general names cryptography refuses to parse
    (x400Address and ediPartyName).
    """
    try:
        raw_extensions = asn1_x509.Certificate.load(der)["tbs_certificate"]["extensions"]
        return {
            get_extension_name(x509.ObjectIdentifier(ext["extn_id"].dotted)):
                render_raw_extension(ext)
            for ext in raw_extensions
        }
    except ValueError as error:
        raise DecodeError(f"Unable to read certificate extensions: {error}") from error


def decode_certificate(der: bytes, *, require_common_name: bool = True) -> CertificateRecord:
    try:
        cert = x509.load_der_x509_certificate(der)
        serial_number = cert.serial_number
        subject = cert.subject
        try:
            extensions = {
                get_extension_name(ext.oid): render_extension_value(ext)
                for ext in cert.extensions
            }
        except x509.UnsupportedGeneralNameType:
            extensions = read_raw_extensions(der)
    except (ValueError, x509.DuplicateExtension) as error:
        raise DecodeError(f"Unable to decode certificate: {error}") from error

    try:
        common_name: str | None = get_common_name(subject)
    except MissingFieldError:
        if require_common_name:
            raise
        common_name = None

    not_before, not_after = read_validity(der)

    return CertificateRecord(
        subject_common_name=common_name,
        not_before=not_before,
        not_after=not_after,
        serial_number_hex=format_serial_number(serial_number),
        extensions=MappingProxyType(extensions),
    )


def inspect(config: InspectorConfig) -> CertificateRecord:
    der = TLSConnector(config).fetch_peer_certificate()
    return decode_certificate(der, require_common_name=False)


def print_field(header: str, values: Iterable[str | int | None]) -> None:
    if values and any(values):
        click.secho(f"[{header}]")
        for value in values:
            click.echo(f"  {value}")


def get_not_after_status(not_before: datetime, not_after: datetime) -> str:
    lifetime = not_after - not_before

    if lifetime < timedelta(days=10):
        warning_limit = (lifetime / 2).total_seconds()
    elif lifetime < timedelta(days=90):
        warning_limit = (lifetime / 3).total_seconds()
    else:
        warning_limit = 2629743

    delta = (not_after - datetime.now(tz=timezone.utc)).total_seconds()
    if delta < 0:
        return click.style("Expired!", fg="red")
    if delta < warning_limit:
        return click.style("Expires soon!", fg="yellow")
    return click.style("Valid", fg="green")


def print_record(record: CertificateRecord, *, show_extensions: bool) -> None:
    status = get_not_after_status(
        datetime.fromisoformat(record.not_before),
        datetime.fromisoformat(record.not_after),
    )

    click.secho("#############################################################")

    print_field("Common name", [record.subject_common_name or "(none)"])
    print_field("Valid from", [record.not_before])
    print_field("Valid until", [f"{record.not_after} ({status})"])
    print_field("Serial", [record.serial_number_hex])
    print_field("CA certificate", [record.chain_url or "(no CA Issuers URL)"])

    if show_extensions:
        for name, value in sorted(record.extensions.items()):
            print_field(name, value.splitlines() or ["(empty)"])

    click.echo()


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__)
@click.argument("host")
@click.option(
    "--timeout",
    envvar="PKIPEEK_TIMEOUT",
    type=click.FloatRange(min=0, min_open=True),
    default=DEFAULT_TIMEOUT,
    show_default=True,
    help="Seconds to wait for the connection and handshake.",
)
@click.option("--servername", help="Custom SNI name to send in handshake.")
@click.option("--no-servername", is_flag=True, help="Do not send SNI in the handshake.")
@click.option("--show-extensions", is_flag=True, help="Print all certificate extensions.")
@click.option("--print-pem", is_flag=True, help="Print the cert in PEM format.")
def main(
    host: str,
    timeout: float,
    servername: str | None,
    *,
    no_servername: bool,
    show_extensions: bool,
    print_pem: bool,
) -> None:
    """Shows the certificate a TLS server presents, without verifying it."""
    if servername and no_servername:
        raise click.BadArgumentUsage(
            "--servername and --no-servername are mutually exclusive."
        )

    config = InspectorConfig(
        target=parse_host_input(host),
        timeout=timeout,
        servername=servername,
        send_servername=not no_servername,
    )

    click.secho(f"Connecting directly to host '{config.target}'", err=True)
    # Same steps as inspect(), kept apart for the separate
    # exit codes and because --print-pem needs the DER.
    try:
        der = TLSConnector(config).fetch_peer_certificate()
    except PeerConnectionError as error:
        click.secho(str(error), fg="red", err=True)
        sys.exit(4)

    try:
        record = decode_certificate(der, require_common_name=False)
    except (DecodeError, TimestampParseError) as error:
        click.secho(f"Could not decode the certificate: {error}", fg="red", err=True)
        sys.exit(1)

    print_record(record, show_extensions=show_extensions)

    if print_pem:
        pem_cert = x509.load_der_x509_certificate(der).public_bytes(
            serialization.Encoding.PEM
        )
        click.echo(pem_cert.decode())


if __name__ == "__main__":
    main()
