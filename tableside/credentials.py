"""
Bearer credential handling: Secrets Manager lookup, local guest tokens, expiry
"""
import base64
import json
import logging
import time

import boto3
import jwt
from botocore.exceptions import BotoCoreError, ClientError
from jwt.exceptions import InvalidTokenError

logger = logging.getLogger(__name__)

TOKEN_KEY = "guestToken"


def get_secret(secret_name, region='us-east-1'):
    """Get secret from AWS Secrets Manager"""
    client = boto3.client('secretsmanager', region_name=region)
    try:
        response = client.get_secret_value(SecretId=secret_name)
        return response['SecretString']
    except (BotoCoreError, ClientError) as e:
        logger.warning(f"[AUTH] Could not read secret {secret_name}: {e}")
        return None


def token_expired(token, leeway=30):
    """True when a JWT carries an exp claim in the past; opaque tokens never expire locally"""
    try:
        claims = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except InvalidTokenError:
        return False
    exp = claims.get("exp")
    if exp is None:
        return False
    return exp <= time.time() + leeway


def issue_local_token(client_id, restaurant_id):
    """Mint a public guest token: base64 JSON, no server signature"""
    payload = {
        "clientId": client_id,
        "restaurantId": restaurant_id,
        "timestamp": int(time.time() * 1000),
        "type": "client_public",
    }
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("utf-8")


class CredentialProvider:
    """Supplies the bearer token attached to REST and transport calls"""

    def __init__(self, storage, secret_name=None, region='us-east-1'):
        self.storage = storage
        self.secret_name = secret_name
        self.region = region

    def get_token(self):
        token = self.storage.get(TOKEN_KEY)
        if token and token_expired(token):
            logger.info("[AUTH] Cached token expired, dropping it")
            self.storage.remove(TOKEN_KEY)
            token = None

        if not token and self.secret_name:
            token = get_secret(self.secret_name, self.region)
            if token:
                self.storage.set(TOKEN_KEY, token)
        return token

    def ensure_token(self, client_id, restaurant_id):
        """Return the current token, minting a local guest token when none exists"""
        token = self.get_token()
        if not token:
            token = issue_local_token(client_id, restaurant_id)
            self.storage.set(TOKEN_KEY, token)
            logger.info(f"[AUTH] Local guest token issued for {client_id}")
        return token

    def set_token(self, token):
        self.storage.set(TOKEN_KEY, token)

    def clear(self):
        self.storage.remove(TOKEN_KEY)

    def auth_headers(self):
        token = self.get_token()
        return {"Authorization": f"Bearer {token}"} if token else {}
