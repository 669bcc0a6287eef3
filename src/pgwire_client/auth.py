"""
Client side password authentication.

Pure message computation only: the connecting state performs the actual
exchange with the server. SCRAM-SHA-256 follows RFC 5802 / RFC 7677 as
used by PostgreSQL (the username is sent empty, the server takes it from
the StartupMessage).
"""

import base64
import hashlib
import hmac
import secrets
from typing import Dict

from .errors import AuthenticationError

SASL_SCRAM_SHA_256 = "SCRAM-SHA-256"


def md5_password(user: str, password: str, salt: bytes) -> str:
    """'md5' + md5(md5(password + user) + salt)"""
    inner = hashlib.md5((password + user).encode('utf-8')).hexdigest()
    return "md5" + hashlib.md5(inner.encode('ascii') + salt).hexdigest()


def _parse_attributes(message: str) -> Dict[str, str]:
    attributes = {}
    for part in message.split(','):
        if len(part) >= 2 and part[1] == '=':
            attributes[part[0]] = part[2:]
    return attributes


class ScramClient:
    """SCRAM-SHA-256 conversation state for one authentication attempt"""

    def __init__(self, password: str, nonce: str = None, username: str = ""):
        self.password = password
        self.client_nonce = nonce or base64.b64encode(secrets.token_bytes(18)).decode('ascii')
        self.client_first_bare = f"n={username},r={self.client_nonce}"
        self.server_signature = None

    def client_first(self) -> bytes:
        # gs2 header "n,," : no channel binding
        return ("n,," + self.client_first_bare).encode('utf-8')

    def client_final(self, server_first: bytes) -> bytes:
        server_first_str = server_first.decode('utf-8')
        attributes = _parse_attributes(server_first_str)
        try:
            nonce = attributes['r']
            salt = base64.b64decode(attributes['s'])
            iterations = int(attributes['i'])
        except (KeyError, ValueError) as e:
            raise AuthenticationError(f"Malformed SCRAM server-first message: {server_first_str!r}") from e

        if not nonce.startswith(self.client_nonce):
            raise AuthenticationError("SCRAM server nonce does not extend the client nonce")

        salted_password = hashlib.pbkdf2_hmac('sha256', self.password.encode('utf-8'), salt, iterations)
        client_key = hmac.new(salted_password, b"Client Key", hashlib.sha256).digest()
        stored_key = hashlib.sha256(client_key).digest()

        client_final_without_proof = f"c=biws,r={nonce}"
        auth_message = ",".join([self.client_first_bare, server_first_str, client_final_without_proof])

        client_signature = hmac.new(stored_key, auth_message.encode('utf-8'), hashlib.sha256).digest()
        proof = bytes(a ^ b for a, b in zip(client_key, client_signature))

        server_key = hmac.new(salted_password, b"Server Key", hashlib.sha256).digest()
        self.server_signature = hmac.new(server_key, auth_message.encode('utf-8'), hashlib.sha256).digest()

        final = f"{client_final_without_proof},p={base64.b64encode(proof).decode('ascii')}"
        return final.encode('utf-8')

    def verify_server_final(self, server_final: bytes) -> None:
        attributes = _parse_attributes(server_final.decode('utf-8'))
        if 'e' in attributes:
            raise AuthenticationError(f"SCRAM authentication failed: {attributes['e']}")
        signature = base64.b64decode(attributes.get('v', ''))
        if self.server_signature is None or not hmac.compare_digest(signature, self.server_signature):
            raise AuthenticationError("SCRAM server signature mismatch")
