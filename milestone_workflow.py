"""
Milestone escrow state machine

    pending --fund--> funded --submit--> in_review --release--> released
                        |                                           ^
                        +------------------release------------------+

Clients fund and release, freelancers submit work for review. Only the two
parties of the parent contract can see or touch its milestones.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from auth_context import AuthContext
from qpay import INVOICE_PAID, InvoiceTicket
from workflow_errors import (
    AuthorizationError, ConflictError, InvalidTransitionError, NotFoundError,
    StoreError, ValidationError, parse_amount
)

logger = logging.getLogger(__name__)

# (from, to) -> contract party allowed to make the move
TRANSITIONS = {
    ('pending', 'funded'): 'client',
    ('funded', 'in_review'): 'freelancer',
    ('funded', 'released'): 'client',
    ('in_review', 'released'): 'client',
}

ACTIONS = {
    'fund': 'funded',
    'submit': 'in_review',
    'release': 'released',
}

TIMESTAMP_FIELDS = {
    'funded': 'funded_at',
    'in_review': 'submitted_at',
    'released': 'released_at',
}


def allowed_actions(party: Optional[str], status: str) -> List[str]:
    """Actions `party` may take on a milestone currently in `status`"""
    return [action for action, target in ACTIONS.items()
            if party is not None and TRANSITIONS.get((status, target)) == party]


class MilestoneService:
    """
    Service for contract milestones and their funding lifecycle

    Args:
        db: SQLAlchemy database instance
        Contract: Contract model
        Milestone: Milestone model
        invoice_gateway: InvoiceGateway used to bill milestone funding
        require_payment: funding needs a paid invoice for the milestone
    """

    def __init__(self, db, Contract, Milestone, invoice_gateway, require_payment=True):
        self.db = db
        self.Contract = Contract
        self.Milestone = Milestone
        self.invoice_gateway = invoice_gateway
        self.require_payment = require_payment

    @staticmethod
    def contract_party(auth: AuthContext, contract) -> Optional[str]:
        """'client', 'freelancer' or None for anyone outside the contract"""
        if auth.is_client and contract.client_id == auth.user_id:
            return 'client'
        if auth.is_freelancer and contract.freelancer_id == auth.user_id:
            return 'freelancer'
        return None

    def open_contract(self, auth: AuthContext, contract_id):
        contract = self.db.session.get(self.Contract, contract_id)
        if contract is None:
            raise NotFoundError('Contract not found')

        party = self.contract_party(auth, contract)
        if party is None:
            raise AuthorizationError('You are not a party to this contract')
        return contract, party

    def _open_milestone(self, auth: AuthContext, milestone_id) -> Tuple[object, object, str]:
        milestone = self.db.session.get(self.Milestone, milestone_id)
        if milestone is None:
            raise NotFoundError('Milestone not found')
        contract, party = self.open_contract(auth, milestone.contract_id)
        return milestone, contract, party

    def list_milestones(self, contract_id) -> List:
        return self.Milestone.query.filter_by(contract_id=contract_id).order_by(
            self.Milestone.created_at.asc(), self.Milestone.id.asc()
        ).all()

    def _milestone_views(self, contract_id, party) -> List[Dict]:
        views = []
        for milestone in self.list_milestones(contract_id):
            item = milestone.to_dict()
            item['actions'] = allowed_actions(party, milestone.status)
            views.append(item)
        return views

    def contract_view(self, auth: AuthContext, contract_id) -> Dict:
        """Contract dashboard: the contract, the caller's side and its milestones"""
        contract, party = self.open_contract(auth, contract_id)
        return {
            'contract': contract.to_dict(),
            'is_client': party == 'client',
            'is_freelancer': party == 'freelancer',
            'milestones': self._milestone_views(contract.id, party)
        }

    def create_milestone(self, auth: AuthContext, contract_id, title, description=None, amount=None):
        contract, party = self.open_contract(auth, contract_id)
        if party != 'client':
            raise AuthorizationError('Only the client can add milestones')

        title = (title or '').strip()
        if not title:
            raise ValidationError('title is required')
        amount = parse_amount(amount)

        if contract.status != 'active':
            raise ConflictError(f'Contract is not active (status: {contract.status})')

        milestone = self.Milestone(
            contract_id=contract.id,
            title=title,
            description=(description or '').strip() or None,
            amount=amount,
            status='pending'
        )
        try:
            self.db.session.add(milestone)
            self.db.session.commit()
        except SQLAlchemyError as e:
            self.db.session.rollback()
            logger.error(f"Create milestone failed for contract {contract.id}: {e}")
            raise StoreError('create_milestone')
        return milestone

    def request_funding(self, auth: AuthContext, milestone_id) -> InvoiceTicket:
        """Issue the invoice the client pays to fund a pending milestone"""
        milestone, contract, party = self._open_milestone(auth, milestone_id)
        if party != 'client':
            raise AuthorizationError('Only the client can fund milestones')
        if milestone.status != 'pending':
            raise ConflictError(f'Milestone is already {milestone.status}')

        ticket = self.invoice_gateway.create_invoice(milestone.amount, str(contract.id), str(milestone.id))
        logger.info(f"Invoice {ticket.invoice_id} issued for milestone {milestone.id}")
        return ticket

    def _check_payment(self, contract, milestone, invoice_id):
        if not invoice_id:
            raise ValidationError('invoice_id is required to fund a milestone')

        invoice = self.invoice_gateway.get_invoice(invoice_id)
        if invoice.contract_ref != str(contract.id) or invoice.milestone_ref != str(milestone.id):
            raise ConflictError('Invoice was issued for a different milestone')
        if Decimal(invoice.amount) != Decimal(milestone.amount):
            raise ConflictError('Invoice amount does not match the milestone amount')
        if invoice.status != INVOICE_PAID:
            raise ConflictError('Payment has not been confirmed yet')

    def fund(self, auth: AuthContext, milestone_id, invoice_id=None) -> List[Dict]:
        return self.transition(auth, milestone_id, 'funded', invoice_id=invoice_id)

    def submit_for_review(self, auth: AuthContext, milestone_id) -> List[Dict]:
        return self.transition(auth, milestone_id, 'in_review')

    def release(self, auth: AuthContext, milestone_id) -> List[Dict]:
        return self.transition(auth, milestone_id, 'released')

    def transition(self, auth: AuthContext, milestone_id, target: str, invoice_id=None) -> List[Dict]:
        """
        Move a milestone to `target` and return the contract's reloaded milestones

        The update only applies if the row is still in the status read here,
        so two racing callers cannot both move the same milestone.

        Raises:
            NotFoundError: unknown milestone or contract
            AuthorizationError: caller is not the party allowed to make this move
            InvalidTransitionError: (current, target) is not an edge of the state machine
            ConflictError: payment not confirmed, or the milestone changed underneath us
            StoreError: the update could not be written
        """
        milestone, contract, party = self._open_milestone(auth, milestone_id)
        current = milestone.status

        actor = TRANSITIONS.get((current, target))
        if actor is None:
            raise InvalidTransitionError(current, target)
        if party != actor:
            raise AuthorizationError(f'Only the contract {actor} can move a milestone to {target}')

        if target == 'funded' and self.require_payment:
            self._check_payment(contract, milestone, invoice_id)

        now = datetime.utcnow()
        values = {'status': target, 'updated_at': now, TIMESTAMP_FIELDS[target]: now}
        if target == 'funded' and invoice_id:
            values['invoice_ref'] = invoice_id

        try:
            updated = self.Milestone.query.filter_by(id=milestone.id, status=current).update(
                values, synchronize_session=False
            )
            if updated != 1:
                self.db.session.rollback()
                raise ConflictError('Milestone was changed by someone else; reload and try again')
            self.db.session.commit()
        except SQLAlchemyError as e:
            self.db.session.rollback()
            logger.error(f"Milestone {milestone_id} {current} -> {target} failed: {e}")
            raise StoreError('update_milestone')

        logger.info(f"Milestone {milestone_id} moved {current} -> {target} by user {auth.user_id}")
        return self._milestone_views(contract.id, party)
