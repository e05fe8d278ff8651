"""
LDAP client for reading and writing entries in a directory.

This module wraps a single synchronous ldap3 connection and exposes the four
directory operations the reconciler needs (search, add, modify, delete) plus a
base-scope entry lookup. Every failure is raised immediately; nothing here is
retried except establishing the connection itself.
"""

import base64
import logging
import ssl
import time
from typing import Dict, List, Any, Optional, Iterable, Tuple

from ldap3 import Server, Connection, BASE, LEVEL, SUBTREE, ALL, ALL_ATTRIBUTES, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError

from ldap_reconcile.logging_setup import mask_attributes
from ldap_reconcile.models import DirectoryObject, OBJECT_CLASS

logger = logging.getLogger(__name__)

RESULT_NO_SUCH_OBJECT = 32

DEFAULT_FILTER = '(objectClass=*)'

SEARCH_SCOPES = {
    'baseObject': BASE,
    'singleLevel': LEVEL,
    'wholeSubtree': SUBTREE,
}


class DirectoryError(Exception):
    """Base class for directory failures."""
    pass


class DirectoryConnectError(DirectoryError):
    """Raised when connecting, StartTLS or binding fails."""
    pass


class DirectoryQueryError(DirectoryError):
    """Raised when a search is rejected or the connection fails during a search."""
    pass


class NotFoundOrAmbiguous(DirectoryError):
    """Raised when a base-scope lookup does not return exactly one entry."""

    def __init__(self, dn: str, count: int):
        self.dn = dn
        self.count = count
        super().__init__(f"search returned {count} results")

    @property
    def missing(self) -> bool:
        return self.count == 0


class DirectoryWriteError(DirectoryError):
    """Raised when the server rejects an add, modify or delete."""
    pass


class DirectoryClient:
    """
    Synchronous client for one directory endpoint.

    The ldap3 connection is either built by ``connect()`` from the ``ldap``
    configuration section or handed in ready to use.
    """

    def __init__(self, config: Dict[str, Any], connection: Optional[Connection] = None,
                 error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize directory client with configuration.

        Args:
            config: LDAP configuration dictionary
            connection: Already opened and bound ldap3 connection to use instead
                of connecting
            error_handling: The top-level ``error_handling`` section; its
                ``max_retries`` and ``retry_wait_seconds`` govern ``connect()``
        """
        self.config = config
        self.server_url = config.get('server_url', '')
        self.bind_dn = config.get('bind_dn', '')
        self.bind_password = config.get('bind_password', '')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = not config.get('insecure_skip_verify', False)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)

        error_config = error_handling or {}
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = connection
        self._connected = connection is not None

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Open and bind the connection, retrying the whole sequence on failure.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between attempts (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            DirectoryConnectError: If connection fails after all attempts
        """
        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait if retry_wait is not None else self.retry_wait

        try:
            tls_config = self._create_tls_config()
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=tls_config,
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except DirectoryConnectError:
            raise
        except Exception as e:
            raise DirectoryConnectError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise DirectoryConnectError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise DirectoryConnectError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Connected and bound to LDAP server {self.server_url}")
                return True

            except (LDAPSocketOpenError, LDAPBindError, DirectoryConnectError, LDAPException) as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._drop_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)

        error_msg = f"Failed to connect to LDAP after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise DirectoryConnectError(error_msg)

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while discarding connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise DirectoryConnectError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def _require_connection(self, error_class):
        if not self._connected or self.connection is None:
            raise error_class("Not connected to LDAP server")

    def search(self, base_dn: str, scope: str = 'baseObject', search_filter: str = DEFAULT_FILTER,
               attributes: Optional[Iterable[str]] = None) -> List[DirectoryObject]:
        """
        Run a search and return the matching entries.

        Args:
            base_dn: Search base
            scope: One of ``baseObject``, ``singleLevel``, ``wholeSubtree``
            search_filter: LDAP filter string
            attributes: Attribute names to request, all user attributes if None

        Returns:
            Entries in server order; empty if the base does not exist

        Raises:
            DirectoryQueryError: If the search is rejected or the connection fails
        """
        self._require_connection(DirectoryQueryError)

        if scope not in SEARCH_SCOPES:
            raise DirectoryQueryError(f"Invalid search scope {scope!r}, expected one of {sorted(SEARCH_SCOPES)}")
        attributes = list(attributes) if attributes else [ALL_ATTRIBUTES]

        logger.debug(f"Searching base={base_dn} scope={scope} filter={search_filter} attributes={attributes}")
        try:
            success = self.connection.search(
                search_base=base_dn,
                search_filter=search_filter,
                search_scope=SEARCH_SCOPES[scope],
                attributes=attributes
            )
        except LDAPException as e:
            raise DirectoryQueryError(f"LDAP search failed: {e}")

        if not success:
            result = self.connection.result or {}
            if result.get('result') == RESULT_NO_SUCH_OBJECT:
                return []
            raise DirectoryQueryError(f"LDAP search failed: {_describe_result(result)}")

        entries = []
        for entry in self.connection.entries:
            obj = self._to_directory_object(entry)
            mask_attributes(obj.attributes)
            logger.debug(f"Read entry:\n{_entry_ldif(entry)}")
            entries.append(obj)
        return entries

    def get_entry(self, dn: str, *extra_attributes: str) -> DirectoryObject:
        """
        Fetch exactly one entry by DN.

        All user attributes are requested, plus any extra (operational or
        constructed) attribute names given.

        Raises:
            NotFoundOrAmbiguous: If the search did not return exactly one entry
            DirectoryQueryError: If the search itself failed
        """
        attributes = [ALL_ATTRIBUTES] + [name for name in extra_attributes if name != ALL_ATTRIBUTES]
        entries = self.search(dn, 'baseObject', DEFAULT_FILTER, attributes)
        if len(entries) != 1:
            raise NotFoundOrAmbiguous(dn, len(entries))
        return entries[0]

    def add(self, dn: str, object_classes: List[str], attributes: Dict[str, List[str]]):
        """
        Add a new entry.

        Raises:
            DirectoryWriteError: If the server rejects the entry
        """
        self._require_connection(DirectoryWriteError)
        try:
            success = self.connection.add(dn, object_class=list(object_classes),
                                          attributes={name: list(values) for name, values in attributes.items()})
        except LDAPException as e:
            raise DirectoryWriteError(f"LDAP server reported: {e}")
        self._check_write(success, 'add', dn)

    def modify(self, dn: str, changes: Iterable[Tuple[str, Tuple[int, List[str]]]]):
        """
        Send one modify request.

        Args:
            dn: Entry to modify
            changes: ``(attribute, (operation, values))`` pairs, applied in order

        Raises:
            DirectoryWriteError: If the server rejects the request
        """
        self._require_connection(DirectoryWriteError)
        request = {}
        for attribute, change in changes:
            request.setdefault(attribute, []).append(change)
        if not request:
            return
        try:
            success = self.connection.modify(dn, request)
        except LDAPException as e:
            raise DirectoryWriteError(f"LDAP server reported: {e}")
        self._check_write(success, 'modify', dn)

    def delete(self, dn: str):
        """
        Delete an entry.

        Raises:
            DirectoryWriteError: If the server refuses the delete
        """
        self._require_connection(DirectoryWriteError)
        try:
            success = self.connection.delete(dn)
        except LDAPException as e:
            raise DirectoryWriteError(f"LDAP server reported: {e}")
        self._check_write(success, 'delete', dn)

    def _check_write(self, success: bool, action: str, dn: str):
        if success:
            logger.debug(f"LDAP {action} of {dn} succeeded")
            return
        raise DirectoryWriteError(f"LDAP server reported: {_describe_result(self.connection.result)}")

    def _to_directory_object(self, entry) -> DirectoryObject:
        obj = DirectoryObject(dn=str(entry.entry_dn))
        for name, values in entry.entry_raw_attributes.items():
            decoded = [_decode_value(name, value) for value in values]
            if name.lower() == OBJECT_CLASS.lower():
                obj.object_classes = decoded
            else:
                obj.attributes[name] = decoded
        return obj

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if the root DSE can be read, False otherwise
        """
        try:
            if not self._connected:
                self.connect()
            return bool(self.connection.search(
                search_base='',
                search_filter=DEFAULT_FILTER,
                search_scope=BASE,
                attributes=['namingContexts'],
                size_limit=1
            ))
        except (DirectoryError, LDAPException) as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def get_server_info(self) -> Dict[str, Any]:
        """
        Get LDAP server information.

        Returns:
            Dictionary with server information
        """
        if not self.server or not self.server.info:
            return {}

        info = self.server.info
        return {
            'naming_contexts': getattr(info, 'naming_contexts', []),
            'supported_controls': getattr(info, 'supported_controls', []),
            'vendor_name': getattr(info, 'vendor_name', 'Unknown'),
            'vendor_version': getattr(info, 'vendor_version', 'Unknown')
        }

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()


def _decode_value(name: str, value: Any) -> str:
    if not isinstance(value, bytes):
        return str(value)
    try:
        return value.decode('utf-8')
    except UnicodeDecodeError:
        logger.warning(f"Attribute {name} holds binary data, reading it base64 encoded")
        return base64.b64encode(value).decode('ascii')


def _describe_result(result: Optional[Dict[str, Any]]) -> str:
    if not result:
        return 'no result'
    description = result.get('description', 'unknown error')
    message = result.get('message')
    if message:
        return f"{description}: {message}"
    return description


def _entry_ldif(entry) -> str:
    try:
        return entry.entry_to_ldif()
    except (LDAPException, AttributeError, TypeError):
        return str(getattr(entry, 'entry_dn', entry))
