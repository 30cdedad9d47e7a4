"""
QPay Invoice Gateway Module

Milestone funding is paid through an invoice: the client scans the QR code,
the gateway marks the invoice paid, and only then can the milestone move to
`funded`.

Two gateways share one interface:
- SimulatedInvoiceGateway: in-memory, flips to paid after a fixed delay.
  Process lifetime only, for development and tests.
- QPayInvoiceGateway: invoices persisted in the database, registered with
  QPay when credentials are present, confirmed by the signed callback.

Configuration (QPayInvoiceGateway):
- QPAY_MERCHANT_ID: Your QPay merchant ID
- QPAY_API_KEY: Your QPay API key
- QPAY_SECRET_KEY: Shared secret for request and callback signatures
- QPAY_SANDBOX: Set to 'true' for sandbox mode
"""

import hashlib
import hmac
import logging
import os
import threading
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import requests
from sqlalchemy.exc import SQLAlchemyError

from workflow_errors import (
    InvoiceNotFound, PaymentGatewayError, StoreError, ValidationError, parse_amount
)

logger = logging.getLogger(__name__)

INVOICE_PENDING = 'pending'
INVOICE_PAID = 'paid'

QR_CODE_SERVICE = 'https://api.qrserver.com/v1/create-qr-code/?size=200x200&data='


def build_qr_url(invoice_id: str) -> str:
    """Scannable QR image link encoding the invoice id"""
    return QR_CODE_SERVICE + quote(invoice_id, safe='')


def validate_invoice_request(amount, contract_id, milestone_id) -> Tuple[Decimal, str, str]:
    """Check the three invoice fields before anything is created"""
    fields = (amount, contract_id, milestone_id)
    if any(value is None or str(value).strip() == '' for value in fields):
        raise ValidationError('amount, contractId and milestoneId are required')

    return parse_amount(amount), str(contract_id).strip(), str(milestone_id).strip()


class InvoiceTicket:
    """What the payer needs: the invoice id and a QR link to pay it"""

    def __init__(self, invoice_id: str, qr_url: str):
        self.invoice_id = invoice_id
        self.qr_url = qr_url

    def to_dict(self) -> Dict[str, str]:
        return {'invoice_id': self.invoice_id, 'qr_url': self.qr_url}


class InvoiceRecord:
    def __init__(self, invoice_id, amount, contract_ref, milestone_ref,
                 status=INVOICE_PENDING, created_at=None, paid_at=None):
        self.invoice_id = invoice_id
        self.amount = amount
        self.contract_ref = contract_ref
        self.milestone_ref = milestone_ref
        self.status = status
        self.created_at = created_at or datetime.utcnow()
        self.paid_at = paid_at

    def snapshot(self) -> 'InvoiceRecord':
        return InvoiceRecord(self.invoice_id, self.amount, self.contract_ref,
                             self.milestone_ref, self.status, self.created_at, self.paid_at)

    def to_dict(self):
        return {
            'invoice_id': self.invoice_id,
            'amount': float(self.amount),
            'contract_id': self.contract_ref,
            'milestone_id': self.milestone_ref,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None
        }


class InvoiceGateway:
    """Interface every invoice gateway implements"""

    def create_invoice(self, amount, contract_id, milestone_id) -> InvoiceTicket:
        raise NotImplementedError

    def get_invoice(self, invoice_id: str):
        """Return the invoice record or raise InvoiceNotFound"""
        raise NotImplementedError

    def get_invoice_status(self, invoice_id: str) -> str:
        return self.get_invoice(invoice_id).status


class SimulatedInvoiceGateway(InvoiceGateway):
    """
    Stand-in for the payment provider.

    Each invoice starts pending and a daemon timer marks it paid after
    `payment_delay` seconds, the way a webhook confirmation would. All
    reads and writes go through one lock so a poll never races the timer.
    """

    def __init__(self, payment_delay: float = 10.0):
        self.payment_delay = payment_delay
        self._invoices: Dict[str, InvoiceRecord] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def create_invoice(self, amount, contract_id, milestone_id) -> InvoiceTicket:
        amount, contract_id, milestone_id = validate_invoice_request(amount, contract_id, milestone_id)
        invoice_id = f"MOCK-{uuid.uuid4().hex[:12].upper()}"

        timer = threading.Timer(self.payment_delay, self._settle, args=(invoice_id,))
        timer.daemon = True

        with self._lock:
            self._invoices[invoice_id] = InvoiceRecord(invoice_id, amount, contract_id, milestone_id)
            self._timers[invoice_id] = timer
        timer.start()

        logger.info(f"Simulated invoice {invoice_id} created for contract {contract_id} milestone {milestone_id}")
        return InvoiceTicket(invoice_id, build_qr_url(invoice_id))

    def get_invoice(self, invoice_id: str) -> InvoiceRecord:
        with self._lock:
            record = self._invoices.get(invoice_id)
            if record is None:
                raise InvoiceNotFound(invoice_id)
            return record.snapshot()

    def mark_paid(self, invoice_id: str) -> InvoiceRecord:
        """Confirm payment immediately instead of waiting for the timer"""
        with self._lock:
            record = self._invoices.get(invoice_id)
            if record is None:
                raise InvoiceNotFound(invoice_id)
            if record.status != INVOICE_PAID:
                record.status = INVOICE_PAID
                record.paid_at = datetime.utcnow()
            timer = self._timers.pop(invoice_id, None)
            snapshot = record.snapshot()
        if timer is not None and timer is not threading.current_thread():
            timer.cancel()
        return snapshot

    def _settle(self, invoice_id: str):
        try:
            self.mark_paid(invoice_id)
            logger.info(f"Simulated invoice {invoice_id} marked paid")
        except InvoiceNotFound:
            logger.warning(f"Simulated invoice {invoice_id} vanished before settlement")

    def shutdown(self):
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()


class QPayConfig:
    """QPay configuration settings"""
    SANDBOX_URL = "https://merchant-sandbox.qpay.mn/v2"
    PRODUCTION_URL = "https://merchant.qpay.mn/v2"

    def __init__(self):
        self.merchant_id = os.environ.get('QPAY_MERCHANT_ID', '')
        self.api_key = os.environ.get('QPAY_API_KEY', '')
        self.secret_key = os.environ.get('QPAY_SECRET_KEY', '')
        self.is_sandbox = os.environ.get('QPAY_SANDBOX', 'true').lower() == 'true'

    @property
    def base_url(self) -> str:
        return self.SANDBOX_URL if self.is_sandbox else self.PRODUCTION_URL

    @property
    def is_configured(self) -> bool:
        return bool(self.merchant_id and self.api_key and self.secret_key)


class QPayInvoiceGateway(InvoiceGateway):
    """
    Persistent invoice gateway.

    Invoices live in the `invoice` table. When QPay credentials are set the
    invoice is also registered remotely and the QR link QPay returns is used.
    The pending -> paid transition only happens through `confirm_payment`,
    called from the signed payment callback.
    """

    def __init__(self, db, Invoice, config: Optional[QPayConfig] = None):
        self.db = db
        self.Invoice = Invoice
        self.config = config or QPayConfig()

    def _generate_signature(self, data: Dict[str, Any]) -> str:
        """Generate HMAC signature over the sorted, non-empty fields"""
        sorted_data = sorted(data.items())
        message = '&'.join([f"{k}={v}" for k, v in sorted_data if v is not None and v != '' and k != 'signature'])
        return hmac.new(
            self.config.secret_key.encode('utf-8'),
            message.encode('utf-8'),
            hashlib.sha256
        ).hexdigest()

    def _make_request(self, endpoint: str, data: Dict[str, Any]) -> Dict:
        url = f"{self.config.base_url}/{endpoint}"
        headers = {
            'Content-Type': 'application/json',
            'Authorization': f'Bearer {self.config.api_key}',
            'X-Merchant-ID': self.config.merchant_id
        }

        data['signature'] = self._generate_signature(data)

        try:
            response = requests.post(url, json=data, headers=headers, timeout=30)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            return {
                'success': False,
                'error': str(e),
                'error_code': 'REQUEST_FAILED'
            }

    def _register_remote(self, invoice) -> Dict[str, Any]:
        data = {
            'merchant_id': self.config.merchant_id,
            'sender_invoice_no': invoice.invoice_id,
            'amount': f"{invoice.amount:.2f}",
            'description': f"Milestone {invoice.milestone_ref} of contract {invoice.contract_ref}",
            'timestamp': datetime.utcnow().isoformat()
        }
        return self._make_request('invoice', data)

    def create_invoice(self, amount, contract_id, milestone_id) -> InvoiceTicket:
        amount, contract_id, milestone_id = validate_invoice_request(amount, contract_id, milestone_id)
        invoice_id = f"INV-{datetime.utcnow().strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"

        invoice = self.Invoice(
            invoice_id=invoice_id,
            amount=amount,
            contract_ref=contract_id,
            milestone_ref=milestone_id,
            status=INVOICE_PENDING,
            qr_url=build_qr_url(invoice_id)
        )

        # Local row first: the callback for a remote invoice must always find it
        self._save(invoice, 'create_invoice')

        if self.config.is_configured:
            result = self._register_remote(invoice)
            if result.get('success') is False or not (result.get('invoice_id') or result.get('qr_url')):
                logger.error(f"QPay invoice registration failed: {result.get('error')}")
                self._discard(invoice)
                raise PaymentGatewayError('Payment gateway rejected the invoice')
            invoice.remote_reference = result.get('invoice_id')
            invoice.qr_url = result.get('qr_url') or invoice.qr_url
            self._save(invoice, 'save_remote_reference')

        return InvoiceTicket(invoice.invoice_id, invoice.qr_url)

    def _save(self, invoice, step: str):
        try:
            self.db.session.add(invoice)
            self.db.session.commit()
        except SQLAlchemyError as e:
            self.db.session.rollback()
            logger.error(f"Persisting invoice {invoice.invoice_id} failed at {step}: {e}")
            raise StoreError(step)

    def _discard(self, invoice):
        """Drop a local invoice the gateway never accepted"""
        try:
            self.db.session.delete(invoice)
            self.db.session.commit()
        except SQLAlchemyError as e:
            self.db.session.rollback()
            logger.error(f"Discarding unregistered invoice {invoice.invoice_id} failed: {e}")
            raise StoreError('discard_invoice')

    def get_invoice(self, invoice_id: str):
        invoice = self.Invoice.query.filter_by(invoice_id=invoice_id).first()
        if invoice is None:
            raise InvoiceNotFound(invoice_id)
        return invoice

    def confirm_payment(self, invoice_id: str):
        """Mark an invoice paid; repeated confirmations are no-ops"""
        invoice = self.get_invoice(invoice_id)
        if invoice.status == INVOICE_PAID:
            logger.info(f"Invoice {invoice_id} already paid, skipping duplicate callback")
            return invoice

        invoice.status = INVOICE_PAID
        invoice.paid_at = datetime.utcnow()
        try:
            self.db.session.commit()
        except SQLAlchemyError as e:
            self.db.session.rollback()
            logger.error(f"Confirming invoice {invoice_id} failed: {e}")
            raise StoreError('confirm_payment')
        return invoice

    def verify_callback_signature(self, payload: Dict[str, Any], signature: str) -> bool:
        """
        Verify the X-QPay-Signature header of a payment callback

        Without a secret key no callback can be trusted.
        """
        if not self.config.secret_key or not signature:
            return False
        expected_signature = self._generate_signature(payload)
        return hmac.compare_digest(expected_signature, signature)


def create_invoice_gateway(kind: str, db=None, Invoice=None, payment_delay: float = 10.0) -> InvoiceGateway:
    """Build the gateway selected by INVOICE_GATEWAY"""
    if kind == 'simulated':
        return SimulatedInvoiceGateway(payment_delay=payment_delay)
    if kind == 'qpay':
        return QPayInvoiceGateway(db, Invoice)
    raise ValueError(f"Unknown invoice gateway: {kind}")
