"""
Shared fixtures.

The app reads its configuration at import time, so the environment is set
before `app` is imported: in-memory SQLite, the simulated invoice gateway and
a throwaway audit log directory.
"""
import os
import tempfile

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['INVOICE_GATEWAY'] = 'simulated'
os.environ['INVOICE_PAYMENT_DELAY'] = '30'
os.environ['MILESTONE_FUNDING_REQUIRES_PAYMENT'] = 'true'
os.environ['SESSION_SECRET'] = 'test-secret'
os.environ.setdefault('AUDIT_LOG_DIR', tempfile.mkdtemp(prefix='marketplace-audit-'))

from decimal import Decimal

import pytest

from app import app as flask_app
from app import db, Contract, Milestone, Profile, Project, Proposal


@pytest.fixture
def app():
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_profile(app):
    counter = {'n': 0}

    def _make(role, name=None):
        counter['n'] += 1
        profile = Profile(
            role=role,
            full_name=name or f'{role.title()} {counter["n"]}',
            username=f'{role}{counter["n"]}'
        )
        db.session.add(profile)
        db.session.commit()
        return profile
    return _make


@pytest.fixture
def login(client):
    def _login(profile):
        with client.session_transaction() as sess:
            sess['user_id'] = profile.id
    return _login


@pytest.fixture
def marketplace(make_profile):
    """An open project with two pending proposals and an outsider of each role"""
    client_profile = make_profile('client', 'Bat-Erdene')
    other_client = make_profile('client')
    alice = make_profile('freelancer', 'Alice')
    bob = make_profile('freelancer', 'Bob')
    outsider = make_profile('freelancer')
    admin = make_profile('admin')

    project = Project(
        title='Landing page',
        description='Single page marketing site',
        budget=Decimal('500.00'),
        client_id=client_profile.id,
        status='open'
    )
    db.session.add(project)
    db.session.commit()

    alice_bid = Proposal(project_id=project.id, freelancer_id=alice.id,
                         proposed_budget=Decimal('450.00'), cover_letter='I can start today')
    bob_bid = Proposal(project_id=project.id, freelancer_id=bob.id,
                       proposed_budget=Decimal('480.00'), cover_letter='Ten years of experience')
    db.session.add_all([alice_bid, bob_bid])
    db.session.commit()

    return {
        'client': client_profile,
        'other_client': other_client,
        'alice': alice,
        'bob': bob,
        'outsider': outsider,
        'admin': admin,
        'project': project,
        'alice_bid': alice_bid,
        'bob_bid': bob_bid,
    }


@pytest.fixture
def contract_with_milestones(make_profile):
    """An active contract with two pending milestones"""
    client_profile = make_profile('client')
    freelancer = make_profile('freelancer')
    stranger = make_profile('client')

    project = Project(title='Mobile app', budget=Decimal('1000.00'),
                      client_id=client_profile.id, status='in_progress')
    db.session.add(project)
    db.session.commit()

    contract = Contract(project_id=project.id, client_id=client_profile.id,
                        freelancer_id=freelancer.id, total_amount=Decimal('1000.00'), status='active')
    db.session.add(contract)
    db.session.commit()

    design = Milestone(contract_id=contract.id, title='Design', amount=Decimal('400.00'))
    build = Milestone(contract_id=contract.id, title='Build', amount=Decimal('600.00'))
    db.session.add_all([design, build])
    db.session.commit()

    return {
        'client': client_profile,
        'freelancer': freelancer,
        'stranger': stranger,
        'contract': contract,
        'design': design,
        'build': build,
    }
