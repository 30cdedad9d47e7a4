"""
Proposal review and the hire transaction

Hiring turns one pending proposal into a contract. Four writes make up a
hire and they are applied inside one database transaction:

1. insert the contract
2. move the project to in_progress
3. accept the chosen proposal
4. reject every other proposal on the project

A failing step rolls the whole transaction back and is reported as a
StoreError naming the step. `reconcile` repairs hires that were applied
partially outside this service.
"""

import logging
from contextlib import contextmanager
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth_context import AuthContext
from workflow_errors import (
    AuthorizationError, ConflictError, NotFoundError, StoreError
)

logger = logging.getLogger(__name__)


class HireService:
    """
    Service for reviewing proposals and hiring freelancers

    Args:
        db: SQLAlchemy database instance
        Project: Project model
        Proposal: Proposal model
        Contract: Contract model
        Profile: Profile model (freelancer names in proposal listings)
    """

    def __init__(self, db, Project, Proposal, Contract, Profile):
        self.db = db
        self.Project = Project
        self.Proposal = Proposal
        self.Contract = Contract
        self.Profile = Profile

    def _owned_project(self, auth: AuthContext, project_id, lock=False):
        if not auth.is_client:
            raise AuthorizationError('Only clients can manage proposals')

        query = self.db.select(self.Project).filter_by(id=project_id)
        if lock:
            query = query.with_for_update()
        project = self.db.session.execute(query).scalar_one_or_none()

        if project is None or project.client_id != auth.user_id:
            raise AuthorizationError('Project not found or you are not its owner')
        return project

    def list_proposals(self, auth: AuthContext, project_id) -> List[Dict]:
        """Proposals for one of the caller's projects, newest first"""
        project = self._owned_project(auth, project_id)

        rows = self.db.session.execute(
            self.db.select(self.Proposal, self.Profile)
            .outerjoin(self.Profile, self.Profile.id == self.Proposal.freelancer_id)
            .filter(self.Proposal.project_id == project.id)
            .order_by(self.Proposal.created_at.desc(), self.Proposal.id.desc())
        ).all()

        result = []
        for proposal, profile in rows:
            item = proposal.to_dict()
            item['freelancer'] = {
                'full_name': profile.full_name if profile else None,
                'username': profile.username if profile else None
            }
            result.append(item)
        return result

    @contextmanager
    def _step(self, name: str):
        try:
            yield
        except SQLAlchemyError as e:
            self.db.session.rollback()
            logger.error(f"Hire step {name} failed: {e}")
            if isinstance(e, IntegrityError) and name == 'create_contract':
                raise ConflictError('A contract already exists for this project')
            raise StoreError(name, f'Hiring failed while trying to {name.replace("_", " ")}')

    def _create_contract(self, project, proposal):
        total = proposal.proposed_budget if proposal.proposed_budget is not None else project.budget
        contract = self.Contract(
            project_id=project.id,
            client_id=project.client_id,
            freelancer_id=proposal.freelancer_id,
            start_date=date.today(),
            total_amount=total,
            status='active'
        )
        self.db.session.add(contract)
        self.db.session.flush()
        return contract

    def _start_project(self, project):
        project.status = 'in_progress'
        self.db.session.flush()

    def _accept_proposal(self, proposal):
        proposal.status = 'accepted'
        self.db.session.flush()

    def _reject_other_proposals(self, project, proposal):
        return self.Proposal.query.filter(
            self.Proposal.project_id == project.id,
            self.Proposal.id != proposal.id
        ).update({'status': 'rejected'}, synchronize_session='fetch')

    def hire(self, auth: AuthContext, project_id, proposal_id) -> Dict:
        """
        Hire the freelancer behind `proposal_id` for `project_id`

        Raises:
            AuthorizationError: caller is not the client owning the project
            ConflictError: project not open, proposal not pending or not on the project
            NotFoundError: proposal does not exist
            StoreError: a write failed; nothing was committed
        """
        project = self._owned_project(auth, project_id, lock=True)

        if project.status != 'open':
            raise ConflictError(f'Project is not open for hiring (status: {project.status})')

        proposal = self.db.session.get(self.Proposal, proposal_id)
        if proposal is None:
            raise NotFoundError('Proposal not found')
        if proposal.project_id != project.id:
            raise ConflictError('Proposal does not belong to this project')
        if proposal.status != 'pending':
            raise ConflictError(f'Proposal is no longer pending (status: {proposal.status})')

        with self._step('create_contract'):
            contract = self._create_contract(project, proposal)
        with self._step('start_project'):
            self._start_project(project)
        with self._step('accept_proposal'):
            self._accept_proposal(proposal)
        with self._step('reject_other_proposals'):
            rejected = self._reject_other_proposals(project, proposal)
        with self._step('commit'):
            self.db.session.commit()

        logger.info(f"Project {project.id} hired freelancer {proposal.freelancer_id} "
                    f"(contract {contract.id}, {rejected} proposals rejected)")

        proposals = self.Proposal.query.filter_by(project_id=project.id).order_by(
            self.Proposal.created_at.desc(), self.Proposal.id.desc()
        ).all()
        return {
            'contract': contract.to_dict(),
            'project': project.to_dict(),
            'proposals': [p.to_dict() for p in proposals]
        }

    def reconcile(self, project_id: Optional[int] = None, dry_run: bool = False) -> List[Dict]:
        """
        Find and repair partially applied hires

        Repairs move forward: a contract makes its project in_progress, accepts
        the freelancer's proposal and rejects the rest; an accepted proposal
        without a contract gets its contract. Running it twice changes nothing.

        Returns:
            list of dicts describing each repair
        """
        repairs = []

        contracts = self.Contract.query
        if project_id is not None:
            contracts = contracts.filter_by(project_id=project_id)

        for contract in contracts.order_by(self.Contract.id).all():
            project = self.db.session.get(self.Project, contract.project_id)
            if project is None:
                continue

            if project.status == 'open':
                repairs.append(self._repair('start_project', project.id, contract.id))
                if not dry_run:
                    project.status = 'in_progress'

            proposals = self.Proposal.query.filter_by(project_id=project.id).order_by(
                self.Proposal.created_at.desc(), self.Proposal.id.desc()
            ).all()
            winner = next((p for p in proposals
                           if p.freelancer_id == contract.freelancer_id and p.status == 'accepted'), None)
            if winner is None:
                winner = next((p for p in proposals
                               if p.freelancer_id == contract.freelancer_id and p.status == 'pending'), None)
                if winner is not None:
                    repairs.append(self._repair('accept_proposal', project.id, contract.id, winner.id))
                    if not dry_run:
                        winner.status = 'accepted'

            for proposal in proposals:
                if proposal is winner or proposal.status == 'rejected':
                    continue
                repairs.append(self._repair('reject_proposal', project.id, contract.id, proposal.id))
                if not dry_run:
                    proposal.status = 'rejected'

        orphans = self.db.select(self.Proposal).filter(
            self.Proposal.status == 'accepted',
            ~self.db.select(self.Contract.id).filter(
                self.Contract.project_id == self.Proposal.project_id
            ).exists()
        )
        if project_id is not None:
            orphans = orphans.filter(self.Proposal.project_id == project_id)

        seen_projects = set()
        for proposal in self.db.session.execute(orphans).scalars().all():
            project = self.db.session.get(self.Project, proposal.project_id)
            if project is None or project.id in seen_projects:
                continue
            seen_projects.add(project.id)
            repairs.append(self._repair('create_contract', project.id, None, proposal.id))
            if not dry_run:
                contract = self._create_contract(project, proposal)
                if project.status == 'open':
                    project.status = 'in_progress'
                self._reject_other_proposals(project, proposal)
                repairs[-1]['contract_id'] = contract.id

        if dry_run:
            self.db.session.rollback()
        else:
            with self._step('commit'):
                self.db.session.commit()

        for repair in repairs:
            logger.warning(f"Hire reconciliation: {repair}")
        return repairs

    @staticmethod
    def _repair(action, project_id, contract_id, proposal_id=None):
        return {
            'action': action,
            'project_id': project_id,
            'contract_id': contract_id,
            'proposal_id': proposal_id
        }
