"""
Auth Module for VendorTal Billing
Domain: Tenant identification

Billing endpoints act on behalf of one tenant. The tenant comes from a
Bearer JWT carrying a tenant_id claim, or from the X-Tenant-ID header for
internal service-to-service calls.
"""

import hmac
import os
import secrets
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Optional

import jwt
from flask import request, jsonify, g

# JWT Configuration
JWT_SECRET = os.environ.get('JWT_SECRET', secrets.token_hex(32))
JWT_ALGORITHM = os.environ.get('JWT_ALGORITHM', 'HS256')
JWT_EXPIRY_HOURS = int(os.environ.get('JWT_EXPIRY_HOURS', 168))

# When set, X-Tenant-ID is only trusted together with a matching X-Internal-Secret
INTERNAL_SECRET = os.environ.get('INTERNAL_SECRET', '')


def generate_jwt(user_id: str, tenant_id: str, email: str = None) -> str:
    """Generate a JWT token for an authenticated tenant user."""
    now = datetime.now(timezone.utc)
    payload = {
        'sub': user_id,
        'email': email,
        'tenant_id': tenant_id,
        'iat': now,
        'exp': now + timedelta(hours=JWT_EXPIRY_HOURS)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_jwt(token: str) -> dict:
    """Verify and decode a JWT token."""
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise ValueError('Token has expired')
    except jwt.InvalidTokenError as e:
        raise ValueError(f'Invalid token: {str(e)}')


def _internal_caller() -> bool:
    if not INTERNAL_SECRET:
        return True
    supplied = request.headers.get('X-Internal-Secret', '')
    return hmac.compare_digest(supplied, INTERNAL_SECRET)


def get_request_tenant() -> Optional[str]:
    """
    Tenant for the current request.

    Returns:
        The tenant_id claim of a valid Bearer token, else a trusted
        X-Tenant-ID header, else None. An invalid token never falls back
        to the header.
    """
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        try:
            payload = verify_jwt(auth_header[7:])
        except ValueError as e:
            print(f"[AUTH] Rejected token: {e}", flush=True)
            return None
        g.current_user = payload
        tenant_id = payload.get('tenant_id')
        return str(tenant_id) if tenant_id else None

    tenant_id = request.headers.get('X-Tenant-ID', '').strip()
    if tenant_id and _internal_caller():
        return tenant_id
    return None


def require_tenant(f):
    """Decorator to require a tenant; the tenant id is left on g.tenant_id."""
    @wraps(f)
    def decorated(*args, **kwargs):
        tenant_id = get_request_tenant()
        if not tenant_id:
            return jsonify({'error': 'Tenant identification required'}), 401
        g.tenant_id = tenant_id
        return f(*args, **kwargs)

    return decorated
