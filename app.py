from flask import Flask, request, jsonify, session, g
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timedelta
from functools import wraps
import os
import secrets
import click

from auth_context import resolve_auth_context
from audit_logger import init_audit_logger
from hiring import HireService
from milestone_workflow import MilestoneService
from qpay import QPayInvoiceGateway, create_invoice_gateway
from workflow_errors import (
    AuthenticationRequired, AuthorizationError, ConflictError, InvoiceNotFound, NotFoundError,
    StoreError, ValidationError, WorkflowError, parse_amount
)

app = Flask(__name__)

# Set secret key with fallback
app.secret_key = os.environ.get("SESSION_SECRET") or os.environ.get("SECRET_KEY")
if not app.secret_key:
    # In production, always set SESSION_SECRET or SECRET_KEY
    app.secret_key = secrets.token_hex(32)
    print("⚠️  WARNING: Using auto-generated SECRET_KEY. Set SESSION_SECRET or SECRET_KEY environment variable in production!")

app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///marketplace.db')
if app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgres://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgres://', 'postgresql+psycopg2://', 1)
elif app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgresql://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgresql://', 'postgresql+psycopg2://', 1)
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# Secure session configuration
app.config['SESSION_COOKIE_SECURE'] = os.environ.get('FLASK_ENV') == 'production'
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=24)

# Payments and audit trail
app.config['INVOICE_GATEWAY'] = os.environ.get('INVOICE_GATEWAY', 'simulated')
app.config['INVOICE_PAYMENT_DELAY'] = float(os.environ.get('INVOICE_PAYMENT_DELAY', '10'))
app.config['MILESTONE_FUNDING_REQUIRES_PAYMENT'] = os.environ.get('MILESTONE_FUNDING_REQUIRES_PAYMENT', 'true').lower() == 'true'
app.config['AUDIT_LOG_DIR'] = os.environ.get('AUDIT_LOG_DIR')
app.config['AUDIT_WEBHOOK_URL'] = os.environ.get('AUDIT_WEBHOOK_URL')

db = SQLAlchemy(app)

# Restrict to specific origins in production
allowed_origins = os.environ.get('ALLOWED_ORIGINS', '*').split(',')
CORS(app,
     origins=allowed_origins,
     supports_credentials=True,
     max_age=3600)

audit_logger = init_audit_logger(app)


def money(value):
    """Numeric column value as a JSON number"""
    return float(value) if value is not None else None


# Database Models
class Profile(db.Model):
    """Role record for an identity owned by the external user directory"""
    id = db.Column(db.Integer, primary_key=True)
    role = db.Column(db.String(20), nullable=False)  # client, freelancer, admin
    full_name = db.Column(db.String(120))
    username = db.Column(db.String(80), unique=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'role': self.role,
            'full_name': self.full_name,
            'username': self.username
        }


class Category(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.Text)

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'slug': self.slug, 'description': self.description}


class Project(db.Model):
    """Job posting created by a client"""
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    budget = db.Column(db.Numeric(12, 2))
    category_id = db.Column(db.Integer, db.ForeignKey('category.id'))
    client_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    status = db.Column(db.String(20), default='open', nullable=False)  # open, in_progress, completed, cancelled
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    category = db.relationship('Category')

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'budget': money(self.budget),
            'category_id': self.category_id,
            'category_name': self.category.name if self.category else None,
            'client_id': self.client_id,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class Proposal(db.Model):
    """A freelancer's bid on a project"""
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False, index=True)
    freelancer_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    proposed_budget = db.Column(db.Numeric(12, 2))
    cover_letter = db.Column(db.Text)
    status = db.Column(db.String(20), default='pending', nullable=False)  # pending, accepted, rejected
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'project_id': self.project_id,
            'freelancer_id': self.freelancer_id,
            'proposed_budget': money(self.proposed_budget),
            'cover_letter': self.cover_letter,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class Contract(db.Model):
    """Binding agreement created when a client hires a freelancer"""
    __table_args__ = (
        db.UniqueConstraint('project_id', name='unique_contract_per_project'),
    )
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    freelancer_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    start_date = db.Column(db.Date)
    total_amount = db.Column(db.Numeric(12, 2))
    status = db.Column(db.String(20), default='active', nullable=False)  # active, completed, cancelled
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    project = db.relationship('Project')

    def to_dict(self):
        return {
            'id': self.id,
            'project_id': self.project_id,
            'project_title': self.project.title if self.project else None,
            'client_id': self.client_id,
            'freelancer_id': self.freelancer_id,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'total_amount': money(self.total_amount),
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class Milestone(db.Model):
    """Escrow-funded unit of work within a contract"""
    id = db.Column(db.Integer, primary_key=True)
    contract_id = db.Column(db.Integer, db.ForeignKey('contract.id'), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(db.String(20), default='pending', nullable=False)  # pending, funded, in_review, released
    invoice_ref = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    funded_at = db.Column(db.DateTime)
    submitted_at = db.Column(db.DateTime)
    released_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'contract_id': self.contract_id,
            'title': self.title,
            'description': self.description,
            'amount': money(self.amount),
            'status': self.status,
            'invoice_id': self.invoice_ref,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'funded_at': self.funded_at.isoformat() if self.funded_at else None,
            'submitted_at': self.submitted_at.isoformat() if self.submitted_at else None,
            'released_at': self.released_at.isoformat() if self.released_at else None
        }


class Invoice(db.Model):
    """Payment invoice kept by the persistent QPay gateway"""
    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.String(64), unique=True, nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    contract_ref = db.Column(db.String(64), nullable=False)
    milestone_ref = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(20), default='pending', nullable=False)  # pending, paid
    qr_url = db.Column(db.String(500))
    remote_reference = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    paid_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'invoice_id': self.invoice_id,
            'amount': money(self.amount),
            'contract_id': self.contract_ref,
            'milestone_id': self.milestone_ref,
            'status': self.status,
            'qr_url': self.qr_url,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None
        }


invoice_gateway = create_invoice_gateway(
    app.config['INVOICE_GATEWAY'],
    db=db,
    Invoice=Invoice,
    payment_delay=app.config['INVOICE_PAYMENT_DELAY']
)
hire_service = HireService(db, Project, Proposal, Contract, Profile)
milestone_service = MilestoneService(
    db, Contract, Milestone, invoice_gateway,
    require_payment=app.config['MILESTONE_FUNDING_REQUIRES_PAYMENT']
)


@app.before_request
def load_auth_context():
    """Resolve the caller's identity and role once per request"""
    g.auth = resolve_auth_context(db, Profile, session.get('user_id'))


# Security headers middleware
@app.after_request
def set_security_headers(response):
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    response.headers['Cache-Control'] = 'no-store'
    return response


# Login required decorator for API routes
def login_required(f):
    """Decorator to require a resolved caller profile"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if g.get('auth') is None:
            e = AuthenticationRequired()
            return jsonify(e.to_dict()), e.status_code
        return f(*args, **kwargs)
    return decorated_function


def parse_id(value, field):
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be an integer')
    if value is None or value == '':
        raise ValidationError(f'{field} is required')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer')


def json_body():
    """Request JSON as a dict; an empty body reads as {}"""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def workflow_error_response(e, resource_type=None, resource_id=None, action=None):
    """JSON body and status for a WorkflowError; denials go to the audit trail"""
    if isinstance(e, AuthorizationError):
        audit_logger.log_authorization(resource_type, resource_id, action or request.path, e.message)
    return jsonify(e.to_dict()), e.status_code


# ============================================================================
# IDENTITY & CATEGORIES
# ============================================================================

@app.route('/api/me', methods=['GET'])
@login_required
def get_me():
    """Resolved identity and role of the caller"""
    profile = db.session.get(Profile, g.auth.user_id)
    return jsonify({'auth': g.auth.to_dict(), 'profile': profile.to_dict()}), 200


@app.route('/api/categories', methods=['GET'])
def get_categories():
    categories = Category.query.order_by(Category.name).all()
    return jsonify({'categories': [c.to_dict() for c in categories]}), 200


# ============================================================================
# JOB POSTING & BROWSING
# ============================================================================

@app.route('/api/projects', methods=['POST'])
@login_required
def create_project():
    """Client posts a new job"""
    try:
        g.auth.require_role('client', 'Only clients can post jobs')

        data = json_body()
        title = (data.get('title') or '').strip()
        if not title:
            raise ValidationError('title is required')
        budget = parse_amount(data.get('budget'), 'budget')

        category_id = data.get('category_id')
        if category_id not in (None, ''):
            category_id = parse_id(category_id, 'category_id')
            if db.session.get(Category, category_id) is None:
                raise ValidationError('Unknown category')
        else:
            category_id = None

        project = Project(
            title=title,
            description=(data.get('description') or '').strip() or None,
            budget=budget,
            category_id=category_id,
            client_id=g.auth.user_id,
            status='open'
        )
        db.session.add(project)
        db.session.commit()

        return jsonify({'message': 'Job posted successfully', 'project': project.to_dict()}), 201

    except WorkflowError as e:
        return workflow_error_response(e, 'project', None, 'Post job')
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create project error: {str(e)}")
        return jsonify({'error': 'Failed to post job'}), 500


@app.route('/api/projects', methods=['GET'])
@login_required
def browse_projects():
    """Open jobs for freelancers, newest first, optionally by category"""
    try:
        g.auth.require_role('freelancer', 'Only freelancers can browse jobs')

        query = Project.query.filter_by(status='open')
        category_id = request.args.get('category_id')
        if category_id:
            query = query.filter_by(category_id=parse_id(category_id, 'category_id'))

        projects = query.order_by(Project.created_at.desc(), Project.id.desc()).all()
        return jsonify({'projects': [p.to_dict() for p in projects]}), 200

    except WorkflowError as e:
        return workflow_error_response(e, 'project', None, 'Browse jobs')
    except Exception as e:
        app.logger.error(f"Browse projects error: {str(e)}")
        return jsonify({'error': 'Failed to load jobs'}), 500


@app.route('/api/projects/mine', methods=['GET'])
@login_required
def my_projects():
    """Jobs posted by the calling client"""
    try:
        g.auth.require_role('client', 'Only clients can manage their jobs')

        projects = Project.query.filter_by(client_id=g.auth.user_id).order_by(
            Project.created_at.desc(), Project.id.desc()
        ).all()
        return jsonify({'projects': [p.to_dict() for p in projects]}), 200

    except WorkflowError as e:
        return workflow_error_response(e, 'project', None, 'List own jobs')
    except Exception as e:
        app.logger.error(f"My projects error: {str(e)}")
        return jsonify({'error': 'Failed to load jobs'}), 500


@app.route('/api/projects/<int:project_id>', methods=['GET'])
@login_required
def get_project(project_id):
    project = db.session.get(Project, project_id)
    if project is None:
        return jsonify({'error': 'Job not found'}), 404
    return jsonify({'project': project.to_dict()}), 200


# ============================================================================
# PROPOSALS & HIRING
# ============================================================================

@app.route('/api/projects/<int:project_id>/proposals', methods=['POST'])
@login_required
def submit_proposal(project_id):
    """Freelancer bids on an open job"""
    try:
        g.auth.require_role('freelancer', 'Only freelancers can submit proposals')

        data = json_body()
        proposed_budget = parse_amount(data.get('proposed_budget'), 'proposed_budget')

        project = db.session.get(Project, project_id)
        if project is None:
            raise NotFoundError('Job not found')
        if project.status != 'open':
            raise ConflictError('This job is no longer accepting proposals')

        proposal = Proposal(
            project_id=project.id,
            freelancer_id=g.auth.user_id,
            proposed_budget=proposed_budget,
            cover_letter=(data.get('cover_letter') or '').strip() or None,
            status='pending'
        )
        db.session.add(proposal)
        db.session.commit()

        return jsonify({'message': 'Proposal submitted successfully', 'proposal': proposal.to_dict()}), 201

    except WorkflowError as e:
        return workflow_error_response(e, 'project', project_id, 'Submit proposal')
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Submit proposal error: {str(e)}")
        return jsonify({'error': 'Failed to submit proposal'}), 500


@app.route('/api/projects/<int:project_id>/proposals', methods=['GET'])
@login_required
def get_project_proposals(project_id):
    """All proposals for a job (owning client only)"""
    try:
        proposals = hire_service.list_proposals(g.auth, project_id)
        return jsonify({
            'project_id': project_id,
            'proposals': proposals,
            'total_proposals': len(proposals)
        }), 200

    except WorkflowError as e:
        return workflow_error_response(e, 'project', project_id, 'Review proposals')
    except Exception as e:
        app.logger.error(f"Get proposals error: {str(e)}")
        return jsonify({'error': 'Failed to retrieve proposals'}), 500


@app.route('/api/projects/<int:project_id>/hire', methods=['POST'])
@login_required
def hire_freelancer(project_id):
    """Client hires the freelancer behind one of the job's proposals"""
    try:
        data = json_body()
        proposal_id = parse_id(data.get('proposal_id'), 'proposal_id')
        result = hire_service.hire(g.auth, project_id, proposal_id)

        audit_logger.log_workflow(
            'hiring', 'hire_completed', 'Hire freelancer', 'project', project_id,
            details={'contract_id': result['contract']['id'], 'proposal_id': proposal_id}
        )
        return jsonify({'message': 'Contract created successfully', **result}), 201

    except StoreError as e:
        audit_logger.log_workflow(
            'hiring', 'hire_failed', 'Hire freelancer', 'project', project_id,
            status='failure', details={'step': e.step}, message=e.message
        )
        return jsonify(e.to_dict()), e.status_code
    except WorkflowError as e:
        return workflow_error_response(e, 'project', project_id, 'Hire freelancer')
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Hire freelancer error: {str(e)}")
        return jsonify({'error': 'Failed to hire freelancer'}), 500


# ============================================================================
# CONTRACTS & MILESTONES
# ============================================================================

@app.route('/api/contracts', methods=['GET'])
@login_required
def my_contracts():
    """Contracts where the caller is the client or the freelancer"""
    if g.auth.is_client:
        query = Contract.query.filter_by(client_id=g.auth.user_id)
    elif g.auth.is_freelancer:
        query = Contract.query.filter_by(freelancer_id=g.auth.user_id)
    else:
        return jsonify({'contracts': []}), 200
    contracts = query.order_by(Contract.created_at.desc(), Contract.id.desc()).all()
    return jsonify({'contracts': [c.to_dict() for c in contracts]}), 200


@app.route('/api/contracts/<int:contract_id>', methods=['GET'])
@login_required
def get_contract(contract_id):
    """Contract dashboard with milestones and the actions open to the caller"""
    try:
        return jsonify(milestone_service.contract_view(g.auth, contract_id)), 200
    except WorkflowError as e:
        return workflow_error_response(e, 'contract', contract_id, 'View contract')
    except Exception as e:
        app.logger.error(f"Get contract error: {str(e)}")
        return jsonify({'error': 'Failed to load contract'}), 500


@app.route('/api/contracts/<int:contract_id>/milestones', methods=['POST'])
@login_required
def create_milestone(contract_id):
    """Client adds a milestone to an active contract"""
    try:
        data = json_body()
        milestone = milestone_service.create_milestone(
            g.auth, contract_id,
            title=data.get('title'),
            description=data.get('description'),
            amount=data.get('amount')
        )
        return jsonify({'message': 'Milestone created', 'milestone': milestone.to_dict()}), 201
    except WorkflowError as e:
        return workflow_error_response(e, 'contract', contract_id, 'Create milestone')
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create milestone error: {str(e)}")
        return jsonify({'error': 'Failed to create milestone'}), 500


@app.route('/api/milestones/<int:milestone_id>/invoice', methods=['POST'])
@login_required
def create_milestone_invoice(milestone_id):
    """Issue the payment invoice that funds a pending milestone"""
    try:
        ticket = milestone_service.request_funding(g.auth, milestone_id)
        audit_logger.log_workflow(
            'payment', 'invoice_created', 'Create funding invoice', 'milestone', milestone_id,
            details={'invoice_id': ticket.invoice_id}
        )
        return jsonify(ticket.to_dict()), 201
    except WorkflowError as e:
        return workflow_error_response(e, 'milestone', milestone_id, 'Create funding invoice')
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create milestone invoice error: {str(e)}")
        return jsonify({'error': 'Failed to create invoice'}), 500


def _milestone_action(milestone_id, action):
    labels = {
        'fund': ('Fund milestone', 'Milestone funded'),
        'submit': ('Submit milestone work', 'Work submitted for review'),
        'release': ('Release milestone payment', 'Payment released'),
    }
    action_label, message = labels[action]
    try:
        if action == 'fund':
            invoice_id = json_body().get('invoice_id')
            milestones = milestone_service.fund(g.auth, milestone_id, invoice_id=invoice_id)
        elif action == 'submit':
            milestones = milestone_service.submit_for_review(g.auth, milestone_id)
        else:
            milestones = milestone_service.release(g.auth, milestone_id)

        audit_logger.log_workflow('milestone', f'milestone_{action}', action_label, 'milestone', milestone_id)
        return jsonify({'message': message, 'milestones': milestones}), 200

    except WorkflowError as e:
        return workflow_error_response(e, 'milestone', milestone_id, action_label)
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"{action_label} error: {str(e)}")
        return jsonify({'error': f'Failed to {action} milestone'}), 500


@app.route('/api/milestones/<int:milestone_id>/fund', methods=['POST'])
@login_required
def fund_milestone(milestone_id):
    return _milestone_action(milestone_id, 'fund')


@app.route('/api/milestones/<int:milestone_id>/submit', methods=['POST'])
@login_required
def submit_milestone(milestone_id):
    return _milestone_action(milestone_id, 'submit')


@app.route('/api/milestones/<int:milestone_id>/release', methods=['POST'])
@login_required
def release_milestone(milestone_id):
    return _milestone_action(milestone_id, 'release')


# ============================================================================
# QPAY INVOICES
# ============================================================================

@app.route('/api/qpay', methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE'])
def qpay_invoices():
    """Create a payment invoice (POST) or poll its status (GET)"""
    if request.method == 'POST':
        try:
            data = json_body()
            ticket = invoice_gateway.create_invoice(
                data.get('amount'), data.get('contractId'), data.get('milestoneId')
            )
        except WorkflowError as e:
            return jsonify(e.to_dict()), e.status_code
        except Exception as e:
            app.logger.error(f"Create invoice error: {str(e)}")
            return jsonify({'error': 'Failed to create invoice'}), 500

        audit_logger.log_workflow(
            'payment', 'invoice_created', 'Create invoice', 'invoice', ticket.invoice_id,
            details={'contract_id': data.get('contractId'), 'milestone_id': data.get('milestoneId')}
        )
        return jsonify(ticket.to_dict()), 200

    if request.method == 'GET':
        invoice_ids = request.args.getlist('invoice_id')
        if len(invoice_ids) != 1 or not invoice_ids[0]:
            return jsonify({'error': 'invoice_id query param is required'}), 400
        try:
            status = invoice_gateway.get_invoice_status(invoice_ids[0])
        except InvoiceNotFound as e:
            return jsonify(e.to_dict()), e.status_code
        except Exception as e:
            app.logger.error(f"Invoice status error: {str(e)}")
            return jsonify({'error': 'Failed to read invoice status'}), 500
        return jsonify({'status': status}), 200

    return jsonify({'error': 'Method not allowed'}), 405


@app.route('/api/qpay/callback', methods=['POST'])
def qpay_callback():
    """Payment confirmation pushed by QPay for the persistent gateway"""
    if not isinstance(invoice_gateway, QPayInvoiceGateway):
        return jsonify({'error': 'Payment callbacks are not enabled'}), 404

    try:
        data = json_body()
    except ValidationError as e:
        return jsonify(e.to_dict()), e.status_code
    signature = request.headers.get('X-QPay-Signature', '')

    if not invoice_gateway.verify_callback_signature(data, signature):
        app.logger.warning("Invalid QPay callback signature")
        return jsonify({'error': 'Invalid signature'}), 401

    invoice_id = data.get('invoice_id')
    if not invoice_id:
        return jsonify({'error': 'Missing invoice_id'}), 400

    if data.get('status') not in ('paid', 'success'):
        return jsonify({'success': True, 'message': 'Callback received'}), 200

    try:
        invoice = invoice_gateway.confirm_payment(invoice_id)
    except InvoiceNotFound as e:
        app.logger.warning(f"Invoice not found for callback: {invoice_id}")
        return jsonify(e.to_dict()), e.status_code
    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code

    app.logger.info(f"Invoice {invoice_id} confirmed paid via QPay")
    audit_logger.log_workflow('payment', 'invoice_paid', 'Confirm invoice payment', 'invoice', invoice_id)
    return jsonify({'success': True, 'status': invoice.status}), 200


# ============================================================================
# MAINTENANCE
# ============================================================================

@app.cli.command('reconcile-hires')
@click.option('--dry-run', is_flag=True, help='Report repairs without writing them')
@click.option('--project-id', type=int, default=None, help='Only check one project')
def reconcile_hires_command(dry_run, project_id):
    """Repair hires whose contract, project and proposals disagree"""
    repairs = hire_service.reconcile(project_id=project_id, dry_run=dry_run)
    if not repairs:
        click.echo('All hires are consistent.')
        return
    for repair in repairs:
        click.echo(f"{'WOULD ' if dry_run else ''}{repair['action']}: project={repair['project_id']} "
                   f"contract={repair['contract_id']} proposal={repair['proposal_id']}")


DEFAULT_CATEGORIES = [
    ('Web Development', 'web', 'Websites, web apps and APIs'),
    ('Mobile Development', 'mobile', 'iOS and Android apps'),
    ('Design', 'design', 'Logo, graphic and UI/UX design'),
    ('Writing & Translation', 'writing', 'Content writing, translation, copywriting'),
    ('Digital Marketing', 'marketing', 'SEO, social media marketing, ads'),
    ('Data & Analytics', 'data', 'Data entry, analysis and reporting'),
]


def init_database():
    """Create tables and seed default categories"""
    db.create_all()

    if Category.query.count() == 0:
        for name, slug, description in DEFAULT_CATEGORIES:
            db.session.add(Category(name=name, slug=slug, description=description))
        db.session.commit()
        app.logger.info("Default categories added")


with app.app_context():
    init_database()

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG', 'False') == 'True')
