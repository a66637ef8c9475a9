"""
Thin adapter around the Chapa HTTP API.

Only three calls matter to the reservation flow: initialize a hosted checkout,
verify a transaction and refund it. Every failure (network, timeout, non-2xx,
garbage body) is raised as GatewayUnavailableError; nothing is retried here.
"""
import logging
from dataclasses import dataclass, field

import requests
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from .exceptions import GatewayUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = 'https://api.chapa.co/v1'


@dataclass
class InitiateResult:
    checkout_url: str
    tx_ref: str
    status: str


@dataclass
class VerifyResult:
    tx_ref: str
    gateway_status: str
    raw: dict = field(default_factory=dict)


class ChapaClient:
    def __init__(self, secret_key, base_url=DEFAULT_BASE_URL, timeout=30, session=None):
        if not secret_key:
            raise ImproperlyConfigured('Chapa secret key is not configured (CHAPA_SECRET_KEY)')
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {secret_key}',
            'Content-Type': 'application/json',
        })

    @classmethod
    def from_settings(cls):
        return cls(
            secret_key=settings.CHAPA_SECRET_KEY,
            base_url=getattr(settings, 'CHAPA_BASE_URL', DEFAULT_BASE_URL),
            timeout=getattr(settings, 'CHAPA_TIMEOUT', 30),
        )

    def _request(self, method, path, **kwargs):
        url = f'{self.base_url}{path}'
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning('Chapa %s %s failed: %s', method, path, e)
            raise GatewayUnavailableError(f'Failed to communicate with Chapa API: {e}') from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if not resp.ok:
            message = body.get('message') if isinstance(body, dict) else None
            logger.warning('Chapa %s %s answered %s', method, path, resp.status_code)
            raise GatewayUnavailableError(message or f'Chapa API returned HTTP {resp.status_code}', response=body)

        if not isinstance(body, dict):
            raise GatewayUnavailableError('Chapa API returned an unreadable response')
        return body

    def initialize(self, tx_ref, amount, currency, customer, callback_url, return_url):
        payload = {
            'amount': str(amount),
            'currency': currency,
            'email': customer.get('email', ''),
            'first_name': customer.get('name', ''),
            'phone_number': customer.get('phone') or '',
            'tx_ref': tx_ref,
            'callback_url': callback_url,
            'return_url': return_url,
        }
        body = self._request('POST', '/transaction/initialize', json=payload)

        data = body.get('data') if isinstance(body.get('data'), dict) else {}
        checkout_url = data.get('checkout_url')
        if not checkout_url:
            raise GatewayUnavailableError('Chapa response missing checkout_url', response=body)

        return InitiateResult(
            checkout_url=checkout_url,
            tx_ref=tx_ref,
            status=body.get('status') or data.get('status') or 'pending',
        )

    def verify(self, tx_ref):
        body = self._request('GET', f'/transaction/verify/{tx_ref}')
        data = body.get('data') if isinstance(body.get('data'), dict) else {}
        return VerifyResult(tx_ref=tx_ref, gateway_status=data.get('status') or 'unknown', raw=body)

    def refund(self, tx_ref, reason):
        body = self._request('POST', f'/refund/{tx_ref}', json={'reason': reason})
        data = body.get('data') if isinstance(body.get('data'), dict) else {}
        return VerifyResult(tx_ref=tx_ref, gateway_status=data.get('status') or 'refunded', raw=body)


def get_gateway():
    return ChapaClient.from_settings()
