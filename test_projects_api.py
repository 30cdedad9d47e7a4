"""Tests for identity, job posting, browsing and proposals over HTTP"""
from decimal import Decimal

from app import db, init_database, Category, Project, Proposal


def test_me_requires_a_profile(client, login, make_profile):
    assert client.get('/api/me').status_code == 401

    with client.session_transaction() as sess:
        sess['user_id'] = 4242
    assert client.get('/api/me').status_code == 401

    freelancer = make_profile('freelancer', 'Alice')
    login(freelancer)
    body = client.get('/api/me').get_json()
    assert body['auth'] == {'user_id': freelancer.id, 'role': 'freelancer'}
    assert body['profile']['full_name'] == 'Alice'


def test_categories_are_seeded_once(client, app):
    init_database()
    init_database()

    categories = client.get('/api/categories').get_json()['categories']
    assert len(categories) == Category.query.count() == 6
    assert [c['name'] for c in categories] == sorted(c['name'] for c in categories)


def test_client_posts_a_job(client, login, make_profile):
    init_database()
    owner = make_profile('client')
    login(owner)
    web = Category.query.filter_by(slug='web').one()

    response = client.post('/api/projects', json={
        'title': '  Booking site ',
        'description': 'Hotel booking',
        'budget': '1200.50',
        'category_id': web.id
    })

    assert response.status_code == 201
    project = response.get_json()['project']
    assert project['title'] == 'Booking site'
    assert project['budget'] == 1200.5
    assert project['status'] == 'open'
    assert project['client_id'] == owner.id
    assert project['category_name'] == 'Web Development'


def test_post_job_validation(client, login, make_profile):
    login(make_profile('client'))

    assert client.post('/api/projects', json={'budget': 100}).status_code == 400
    assert client.post('/api/projects', json={'title': 'x', 'budget': 0}).status_code == 400
    assert client.post('/api/projects', json={'title': 'x', 'budget': 'lots'}).status_code == 400
    assert client.post('/api/projects', json={'title': 'x', 'budget': 10, 'category_id': 999}).status_code == 400
    assert Project.query.count() == 0


def test_freelancers_cannot_post_jobs(client, login, make_profile):
    login(make_profile('freelancer'))
    response = client.post('/api/projects', json={'title': 'x', 'budget': 10})
    assert response.status_code == 403


def test_browse_lists_open_jobs_newest_first(client, login, marketplace):
    owner = marketplace['client']
    closed = Project(title='Closed', budget=Decimal('10'), client_id=owner.id, status='cancelled')
    newer = Project(title='Newer', budget=Decimal('20'), client_id=owner.id)
    db.session.add_all([closed, newer])
    db.session.commit()

    login(marketplace['alice'])
    titles = [p['title'] for p in client.get('/api/projects').get_json()['projects']]
    assert titles == ['Newer', 'Landing page']

    login(owner)
    assert client.get('/api/projects').status_code == 403


def test_browse_by_category(client, login, marketplace):
    init_database()
    design = Category.query.filter_by(slug='design').one()
    db.session.add(Project(title='Logo', budget=Decimal('50'), client_id=marketplace['client'].id,
                           category_id=design.id))
    db.session.commit()

    login(marketplace['bob'])
    projects = client.get(f'/api/projects?category_id={design.id}').get_json()['projects']
    assert [p['title'] for p in projects] == ['Logo']
    assert client.get('/api/projects?category_id=abc').status_code == 400


def test_my_projects_only_lists_own_jobs(client, login, marketplace):
    db.session.add(Project(title='Not mine', budget=Decimal('5'), client_id=marketplace['other_client'].id))
    db.session.commit()

    login(marketplace['client'])
    projects = client.get('/api/projects/mine').get_json()['projects']
    assert [p['title'] for p in projects] == ['Landing page']


def test_project_detail(client, login, marketplace):
    login(marketplace['alice'])
    project_id = marketplace['project'].id

    assert client.get(f'/api/projects/{project_id}').get_json()['project']['title'] == 'Landing page'
    assert client.get('/api/projects/9999').status_code == 404


def test_freelancer_submits_proposal(client, login, marketplace):
    project_id = marketplace['project'].id
    login(marketplace['outsider'])

    response = client.post(f'/api/projects/{project_id}/proposals',
                           json={'proposed_budget': 300, 'cover_letter': 'Fast and cheap'})

    assert response.status_code == 201
    proposal = response.get_json()['proposal']
    assert proposal['status'] == 'pending'
    assert proposal['freelancer_id'] == marketplace['outsider'].id
    assert Proposal.query.filter_by(project_id=project_id).count() == 3


def test_proposal_rules(client, login, marketplace):
    project = marketplace['project']

    login(marketplace['client'])
    assert client.post(f'/api/projects/{project.id}/proposals',
                       json={'proposed_budget': 300}).status_code == 403

    login(marketplace['outsider'])
    assert client.post(f'/api/projects/{project.id}/proposals', json={}).status_code == 400
    assert client.post('/api/projects/9999/proposals', json={'proposed_budget': 1}).status_code == 404

    project.status = 'in_progress'
    db.session.commit()
    assert client.post(f'/api/projects/{project.id}/proposals',
                       json={'proposed_budget': 300}).status_code == 409


def test_proposal_review_is_owner_only(client, login, marketplace):
    url = f'/api/projects/{marketplace["project"].id}/proposals'

    login(marketplace['client'])
    body = client.get(url).get_json()
    assert body['total_proposals'] == 2
    assert {p['freelancer']['full_name'] for p in body['proposals']} == {'Alice', 'Bob'}

    login(marketplace['other_client'])
    assert client.get(url).status_code == 403

    login(marketplace['alice'])
    assert client.get(url).status_code == 403


def test_contract_list_by_side(client, login, contract_with_milestones, make_profile):
    c = contract_with_milestones

    login(c['client'])
    assert [x['id'] for x in client.get('/api/contracts').get_json()['contracts']] == [c['contract'].id]

    login(c['freelancer'])
    assert [x['id'] for x in client.get('/api/contracts').get_json()['contracts']] == [c['contract'].id]

    login(c['stranger'])
    assert client.get('/api/contracts').get_json()['contracts'] == []

    login(make_profile('admin'))
    assert client.get('/api/contracts').get_json()['contracts'] == []


def test_security_headers(client):
    response = client.get('/api/categories')
    assert response.headers['X-Content-Type-Options'] == 'nosniff'
    assert response.headers['X-Frame-Options'] == 'DENY'


def test_non_object_bodies_are_validation_errors(client, login, marketplace):
    login(marketplace['client'])
    assert client.post('/api/projects', json=['title', 10]).status_code == 400

    login(marketplace['alice'])
    url = f'/api/projects/{marketplace["project"].id}/proposals'
    assert client.post(url, json=300).status_code == 400
