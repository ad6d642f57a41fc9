from flask import (
    Blueprint, render_template, request, jsonify, current_app, redirect, url_for,
    send_from_directory, abort, Response
)
from sqlalchemy import or_
from lifescribe import db
from lifescribe.models import (
    Profile, Family, Member, Invite, Person, Relationship, Story, Comment, Reaction,
    Media, LifeEvent, Tribute, PersonRole, PersonPageBlock, PersonPageTheme, DigestSettings
)
from lifescribe.auth import (
    login_required, api_login_required, platform_admin_required, is_authenticated,
    current_profile, login_user, logout_user, verify_password, change_password,
    register_profile, get_membership, require_member
)
from lifescribe.connections import build_connections, render_svg
from lifescribe.analytics import activation_report, engagement_summary
from lifescribe.digest import DigestError, digest_preview, send_digest, send_due_digests
from lifescribe.drafts import DraftManager, ProfileStorage
from lifescribe.mailer import MailerError, get_mailer
from lifescribe import prompts
from lifescribe.stories import (
    ValidationError, create_story, create_tribute, save_upload, tag_person, parse_date, family_people,
    normalize_tags, STORY_STATUSES, VISIBILITIES
)
from datetime import datetime, timedelta
import json
import logging
import os
import uuid

logger = logging.getLogger(__name__)

main_bp = Blueprint('main', __name__)
api_bp = Blueprint('api', __name__)

ADMIN = ('admin',)
CONTRIBUTORS = ('admin', 'member')
MEMBER_ROLES = ('admin', 'member', 'guest')
PERSON_ROLES = ('owner', 'steward', 'contributor', 'viewer')
PAGE_EDITORS = ('owner', 'steward', 'contributor')

INVITE_RATE_LIMIT = 10
INVITE_RATE_WINDOW = timedelta(hours=1)


def _request_data():
    """JSON body or form fields (multipart story uploads)"""
    if request.is_json:
        return request.get_json() or {}
    data = request.form.to_dict()
    if 'person_ids' in request.form:
        data['person_ids'] = request.form.getlist('person_ids')
    return data


def _commit():
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _person_role(person_id, profile):
    return PersonRole.query.filter(
        PersonRole.person_id == person_id,
        PersonRole.profile_id == profile.id,
        PersonRole.revoked_at.is_(None)
    ).first()


def _can_see_story(story, profile):
    if story.profile_id == profile.id:
        return True
    return story.status == 'published' and story.visibility != 'private'


# ==================== PAGES ====================

@main_bp.route('/login', methods=['GET', 'POST'])
def login():
    """Login page"""
    error = None

    if request.method == 'POST':
        profile = verify_password(request.form.get('email'), request.form.get('password', ''))
        if profile:
            login_user(profile)
            return redirect(request.args.get('next') or url_for('main.index'))
        error = 'Invalid email or password'

    if is_authenticated():
        return redirect(url_for('main.index'))

    return render_template('login.html', error=error)


@main_bp.route('/logout')
def logout():
    logout_user()
    return redirect(url_for('main.login'))


@main_bp.route('/')
@login_required
def index():
    return render_template('index.html', profile=current_profile())


@main_bp.route('/invite/<token>')
def invite_landing(token):
    """Join link from the invitation e-mail"""
    if not is_authenticated():
        return redirect(url_for('main.login', next=request.path))
    result, status = _accept_invite(token, current_profile())
    if status != 200:
        return jsonify(result), status
    return redirect(url_for('main.index'))


@main_bp.route('/uploads/<int:family_id>/<path:filename>')
@login_required
def uploaded_file(family_id, filename):
    """Uploaded media, members only"""
    if get_membership(family_id) is None:
        abort(403)
    folder = os.path.join(current_app.config['UPLOAD_FOLDER'], str(family_id))
    return send_from_directory(folder, filename)


# ==================== AUTH API ====================

@api_bp.route('/auth/register', methods=['POST'])
def api_register():
    data = request.get_json() or {}
    result = register_profile(data.get('email'), data.get('password'), data.get('full_name'))
    if 'error' in result:
        return jsonify(result), 400
    login_user(result['profile'])
    return jsonify(result['profile'].to_dict()), 201


@api_bp.route('/auth/login', methods=['POST'])
def api_login():
    data = request.get_json() or {}
    profile = verify_password(data.get('email'), data.get('password'))
    if profile is None:
        return jsonify({'error': 'Invalid email or password'}), 401
    login_user(profile)
    return jsonify(profile.to_dict())


@api_bp.route('/auth/logout', methods=['POST'])
def api_logout():
    logout_user()
    return jsonify({'success': True})


@api_bp.route('/auth/me', methods=['GET'])
@api_login_required
def api_me():
    """Signed-in profile with its families"""
    profile = current_profile()
    data = profile.to_dict()
    data['families'] = [
        dict(m.family.to_dict(), role=m.role) for m in profile.memberships
    ]
    return jsonify(data)


@api_bp.route('/auth/me', methods=['PUT'])
@api_login_required
def api_update_me():
    profile = current_profile()
    data = request.get_json() or {}
    if 'full_name' in data:
        profile.full_name = (data['full_name'] or '').strip() or None
    if 'simple_mode' in data:
        profile.simple_mode = bool(data['simple_mode'])
    if 'settings' in data:
        profile.settings = json.dumps(data['settings'] or {})
    _commit()
    return jsonify(profile.to_dict())


@api_bp.route('/auth/change-password', methods=['POST'])
@api_login_required
def api_change_password():
    data = request.get_json() or {}
    result = change_password(current_profile(), data.get('current_password', ''), data.get('new_password', ''))
    if 'error' in result:
        return jsonify(result), 400
    return jsonify(result)


# ==================== FAMILIES API ====================

@api_bp.route('/families', methods=['GET'])
@api_login_required
def get_families():
    profile = current_profile()
    return jsonify([dict(m.family.to_dict(), role=m.role) for m in profile.memberships])


@api_bp.route('/families', methods=['POST'])
@api_login_required
def create_family():
    """New family; the creator becomes its admin and the weekly digest is switched on"""
    profile = current_profile()
    data = request.get_json() or {}
    name = (data.get('name') or '').strip()
    if not name:
        return jsonify({'error': 'Family name is required'}), 400

    family = Family(name=name, created_by=profile.id)
    db.session.add(family)
    db.session.flush()
    db.session.add(Member(family_id=family.id, profile_id=profile.id, role='admin'))
    db.session.add(DigestSettings(family_id=family.id, enabled=True))
    _commit()

    logger.info('Family %s created by profile %s', family.id, profile.id)
    return jsonify(dict(family.to_dict(), role='admin')), 201


@api_bp.route('/families/<int:family_id>', methods=['GET'])
@api_login_required
def get_family(family_id):
    member, error = require_member(family_id)
    if error:
        return error
    family = db.get_or_404(Family, family_id)
    return jsonify(dict(family.to_dict(), role=member.role))


@api_bp.route('/families/<int:family_id>', methods=['PUT'])
@api_login_required
def update_family(family_id):
    member, error = require_member(family_id, ADMIN)
    if error:
        return error
    family = db.get_or_404(Family, family_id)
    data = request.get_json() or {}
    if 'name' in data:
        if not (data['name'] or '').strip():
            return jsonify({'error': 'Family name is required'}), 400
        family.name = data['name'].strip()
    _commit()
    return jsonify(family.to_dict())


@api_bp.route('/families/<int:family_id>/members', methods=['GET'])
@api_login_required
def get_members(family_id):
    member, error = require_member(family_id)
    if error:
        return error
    members = Member.query.filter_by(family_id=family_id).order_by(Member.joined_at.asc()).all()
    return jsonify([m.to_dict(include_profile=True) for m in members])


@api_bp.route('/families/<int:family_id>/members/<int:member_id>', methods=['PUT'])
@api_login_required
def update_member(family_id, member_id):
    """Change a member's role"""
    member, error = require_member(family_id, ADMIN)
    if error:
        return error
    target = Member.query.filter_by(id=member_id, family_id=family_id).first_or_404()
    role = (request.get_json() or {}).get('role')
    if role not in MEMBER_ROLES:
        return jsonify({'error': f'Invalid role: {role}'}), 400
    if target.role == 'admin' and role != 'admin' and _admin_count(family_id) == 1:
        return jsonify({'error': 'A family needs at least one admin'}), 400
    target.role = role
    _commit()
    return jsonify(target.to_dict(include_profile=True))


@api_bp.route('/families/<int:family_id>/members/<int:member_id>', methods=['DELETE'])
@api_login_required
def remove_member(family_id, member_id):
    member, error = require_member(family_id, ADMIN)
    if error:
        return error
    target = Member.query.filter_by(id=member_id, family_id=family_id).first_or_404()
    if target.role == 'admin' and _admin_count(family_id) == 1:
        return jsonify({'error': 'A family needs at least one admin'}), 400
    db.session.delete(target)
    _commit()
    return '', 204


def _admin_count(family_id):
    return Member.query.filter_by(family_id=family_id, role='admin').count()


# ==================== INVITES API ====================

def _send_invite_email(invite, family):
    mailer = get_mailer()
    join_url = f"{current_app.config['APP_URL'].rstrip('/')}/invite/{invite.token}"
    html = render_template(
        'invite_email.html',
        family_name=family.name,
        email=invite.email,
        join_url=join_url,
        expires_at=invite.expires_at
    )
    return mailer.send(
        current_app.config['INVITE_FROM_EMAIL'],
        invite.email,
        f"You're invited to join {family.name} on LifeScribe",
        html
    )


@api_bp.route('/families/<int:family_id>/invites', methods=['GET'])
@api_login_required
def get_invites(family_id):
    member, error = require_member(family_id, ADMIN)
    if error:
        return error
    invites = Invite.query.filter_by(family_id=family_id).order_by(Invite.created_at.desc()).all()
    return jsonify([i.to_dict() for i in invites])


@api_bp.route('/families/<int:family_id>/invites', methods=['POST'])
@api_login_required
def create_invite(family_id):
    """
    Invite someone by e-mail.

    At most 10 invites per inviter per hour. A pending invite for the same
    address is refreshed (new token and expiry) instead of duplicated.
    """
    member, error = require_member(family_id, ADMIN)
    if error:
        return error
    profile = current_profile()
    family = db.get_or_404(Family, family_id)

    data = request.get_json() or {}
    email = (data.get('email') or '').strip().lower()
    role = data.get('role') or 'member'
    if not email or '@' not in email:
        return jsonify({'error': 'A valid email is required'}), 400
    if role not in MEMBER_ROLES:
        return jsonify({'error': f'Invalid role: {role}'}), 400

    now = datetime.utcnow()
    recent = Invite.query.filter(Invite.invited_by == profile.id,
                                 Invite.created_at >= now - INVITE_RATE_WINDOW).count()
    if recent >= INVITE_RATE_LIMIT:
        return jsonify({'error': 'Rate limit exceeded. Maximum 10 invites per hour.'}), 429

    try:
        get_mailer()
    except MailerError as exc:
        return jsonify({'error': str(exc)}), 500

    invite = Invite.query.filter(Invite.family_id == family_id,
                                 Invite.email == email,
                                 Invite.status == 'pending',
                                 Invite.expires_at > now).first()
    if invite:
        invite.token = uuid.uuid4().hex
        invite.role = role
        invite.invited_by = profile.id
        invite.expires_at = now + Invite.EXPIRY
        created = False
    else:
        invite = Invite(family_id=family_id, email=email, role=role, invited_by=profile.id,
                        status='pending', created_at=now, expires_at=now + Invite.EXPIRY)
        db.session.add(invite)
        created = True
    _commit()

    result = _send_invite_email(invite, family)
    if not result['success']:
        return jsonify({'error': 'Failed to send invitation email', 'invite': invite.to_dict()}), 502

    logger.info('Invite %s %s for %s in family %s', invite.id,
                'created' if created else 'refreshed', email, family_id)
    return jsonify({'success': True, 'invite': invite.to_dict(), 'refreshed': not created}), 201 if created else 200


@api_bp.route('/families/<int:family_id>/invites/<int:invite_id>', methods=['DELETE'])
@api_login_required
def revoke_invite(family_id, invite_id):
    member, error = require_member(family_id, ADMIN)
    if error:
        return error
    invite = Invite.query.filter_by(id=invite_id, family_id=family_id).first_or_404()
    if invite.status == 'accepted':
        return jsonify({'error': 'Invite already accepted'}), 400
    db.session.delete(invite)
    _commit()
    return '', 204


def _accept_invite(token, profile):
    invite = Invite.query.filter_by(token=token).first()
    if invite is None:
        return {'error': 'Invite not found'}, 404
    if invite.accepted_at is not None:
        return {'error': 'Invite already used'}, 400
    if invite.is_expired:
        return {'error': 'Invite expired'}, 400

    member = Member.query.filter_by(family_id=invite.family_id, profile_id=profile.id).first()
    if member is None:
        member = Member(family_id=invite.family_id, profile_id=profile.id, role=invite.role)
        db.session.add(member)
    invite.status = 'accepted'
    invite.accepted_at = datetime.utcnow()
    _commit()
    return {'success': True, 'family_id': invite.family_id, 'role': member.role}, 200


@api_bp.route('/invites/<token>/accept', methods=['POST'])
@api_login_required
def accept_invite(token):
    result, status = _accept_invite(token, current_profile())
    return jsonify(result), status


# ==================== PEOPLE API ====================

def _apply_person_fields(person, data):
    for field in ['given_name', 'surname', 'preferred_name', 'gender', 'bio', 'avatar_url']:
        if field in data:
            setattr(person, field, data[field])
    if 'birth_date' in data:
        person.birth_date, _ = parse_date(data['birth_date'], 'birth_date')
    if 'death_date' in data:
        person.death_date, _ = parse_date(data['death_date'], 'death_date')
    if 'is_living' in data:
        person.is_living = bool(data['is_living'])
    elif person.death_date:
        person.is_living = False


@api_bp.route('/families/<int:family_id>/people', methods=['GET'])
@api_login_required
def get_people(family_id):
    member, error = require_member(family_id)
    if error:
        return error
    people = Person.query.filter_by(family_id=family_id).order_by(Person.surname, Person.given_name).all()
    return jsonify([p.to_dict() for p in people])


@api_bp.route('/families/<int:family_id>/people', methods=['POST'])
@api_login_required
def create_person(family_id):
    """New person; the creator owns the person page"""
    member, error = require_member(family_id, CONTRIBUTORS)
    if error:
        return error
    data = request.get_json() or {}
    if not (data.get('given_name') or '').strip():
        return jsonify({'error': 'Given name is required'}), 400

    person = Person(family_id=family_id, created_by=member.profile_id)
    try:
        _apply_person_fields(person, data)
    except ValidationError as exc:
        return jsonify({'error': str(exc)}), 400
    db.session.add(person)
    db.session.flush()
    db.session.add(PersonRole(person_id=person.id, profile_id=member.profile_id, role='owner'))
    _commit()
    return jsonify(person.to_dict()), 201


@api_bp.route('/people/<int:person_id>', methods=['GET'])
@api_login_required
def get_person(person_id):
    person = db.get_or_404(Person, person_id)
    member, error = require_member(person.family_id)
    if error:
        return error
    data = person.to_dict()
    data['life_events'] = [e.to_dict() for e in LifeEvent.query.filter_by(person_id=person_id).all()]
    return jsonify(data)


@api_bp.route('/people/<int:person_id>', methods=['PUT'])
@api_login_required
def update_person(person_id):
    person = db.get_or_404(Person, person_id)
    member, error = require_member(person.family_id, CONTRIBUTORS)
    if error:
        return error
    try:
        _apply_person_fields(person, request.get_json() or {})
    except ValidationError as exc:
        return jsonify({'error': str(exc)}), 400
    _commit()
    return jsonify(person.to_dict())


@api_bp.route('/people/<int:person_id>', methods=['DELETE'])
@api_login_required
def delete_person(person_id):
    """Person and every relationship touching it"""
    person = db.get_or_404(Person, person_id)
    member, error = require_member(person.family_id, ADMIN)
    if error:
        return error
    Relationship.query.filter(or_(Relationship.from_person_id == person_id,
                                  Relationship.to_person_id == person_id)).delete(synchronize_session=False)
    PersonRole.query.filter_by(person_id=person_id).delete()
    PersonPageBlock.query.filter_by(person_id=person_id).delete()
    db.session.delete(person)
    _commit()
    return '', 204


# ==================== PERSON PAGE API ====================

@api_bp.route('/people/<int:person_id>/roles', methods=['GET'])
@api_login_required
def get_person_roles(person_id):
    person = db.get_or_404(Person, person_id)
    member, error = require_member(person.family_id)
    if error:
        return error
    roles = PersonRole.query.filter(PersonRole.person_id == person_id,
                                    PersonRole.revoked_at.is_(None)).all()
    return jsonify([r.to_dict() for r in roles])


@api_bp.route('/people/<int:person_id>/roles', methods=['POST'])
@api_login_required
def grant_person_role(person_id):
    """Owners grant roles on a person page to other family members"""
    person = db.get_or_404(Person, person_id)
    profile = current_profile()
    own_role = _person_role(person_id, profile)
    if own_role is None or own_role.role != 'owner':
        return jsonify({'error': 'Only the owner can grant roles'}), 403

    data = request.get_json() or {}
    role = data.get('role')
    if role not in PERSON_ROLES:
        return jsonify({'error': f'Invalid role: {role}'}), 400
    grantee = db.session.get(Profile, data.get('profile_id'))
    if grantee is None or get_membership(person.family_id, grantee) is None:
        return jsonify({'error': 'Profile is not a member of this family'}), 400

    existing = _person_role(person_id, grantee)
    if existing:
        existing.role = role
        person_role = existing
    else:
        person_role = PersonRole(person_id=person_id, profile_id=grantee.id, role=role)
        db.session.add(person_role)
    _commit()
    return jsonify(person_role.to_dict()), 201


@api_bp.route('/people/<int:person_id>/roles/<int:role_id>', methods=['DELETE'])
@api_login_required
def revoke_person_role(person_id, role_id):
    own_role = _person_role(person_id, current_profile())
    if own_role is None or own_role.role != 'owner':
        return jsonify({'error': 'Only the owner can revoke roles'}), 403
    person_role = PersonRole.query.filter_by(id=role_id, person_id=person_id).first_or_404()
    if person_role.id == own_role.id:
        return jsonify({'error': 'The owner role cannot be revoked'}), 400
    person_role.revoked_at = datetime.utcnow()
    _commit()
    return jsonify(person_role.to_dict())


@api_bp.route('/people/<int:person_id>/page', methods=['GET'])
@api_login_required
def get_person_page(person_id):
    """Blocks and theme; private blocks only for page editors"""
    person = db.get_or_404(Person, person_id)
    member, error = require_member(person.family_id)
    if error:
        return error
    role = _person_role(person_id, current_profile())
    query = PersonPageBlock.query.filter_by(person_id=person_id)
    if role is None or role.role not in PAGE_EDITORS:
        query = query.filter(PersonPageBlock.visibility.in_(('public', 'family')))
    theme = PersonPageTheme.query.filter_by(person_id=person_id).first()
    return jsonify({
        'person': person.to_dict(),
        'blocks': [b.to_dict() for b in query.order_by(PersonPageBlock.position.asc()).all()],
        'theme': theme.to_dict() if theme else None,
        'role': role.role if role else None
    })


@api_bp.route('/people/<int:person_id>/page/blocks', methods=['POST'])
@api_login_required
def add_page_block(person_id):
    db.get_or_404(Person, person_id)
    role = _person_role(person_id, current_profile())
    if role is None or role.role not in PAGE_EDITORS:
        return jsonify({'error': 'No permission to edit this page'}), 403

    data = request.get_json() or {}
    if not data.get('block_type'):
        return jsonify({'error': 'block_type is required'}), 400
    visibility = data.get('visibility') or 'family'
    if visibility not in VISIBILITIES:
        return jsonify({'error': f'Invalid visibility: {visibility}'}), 400

    position = data.get('position')
    if position is None:
        position = PersonPageBlock.query.filter_by(person_id=person_id).count()
    block = PersonPageBlock(person_id=person_id, block_type=data['block_type'],
                            content_id=data.get('content_id'), position=position,
                            visibility=visibility)
    db.session.add(block)
    _commit()
    return jsonify(block.to_dict()), 201


@api_bp.route('/people/<int:person_id>/page/blocks/<int:block_id>', methods=['DELETE'])
@api_login_required
def delete_page_block(person_id, block_id):
    role = _person_role(person_id, current_profile())
    if role is None or role.role not in PAGE_EDITORS:
        return jsonify({'error': 'No permission to edit this page'}), 403
    block = PersonPageBlock.query.filter_by(id=block_id, person_id=person_id).first_or_404()
    db.session.delete(block)
    _commit()
    return '', 204


@api_bp.route('/people/<int:person_id>/page/theme', methods=['PUT'])
@api_login_required
def update_page_theme(person_id):
    db.get_or_404(Person, person_id)
    role = _person_role(person_id, current_profile())
    if role is None or role.role not in ('owner', 'steward'):
        return jsonify({'error': 'No permission to change the theme'}), 403
    theme = PersonPageTheme.query.filter_by(person_id=person_id).first()
    if theme is None:
        theme = PersonPageTheme(person_id=person_id)
        db.session.add(theme)
    theme.settings = json.dumps(request.get_json() or {})
    _commit()
    return jsonify(theme.to_dict())


# ==================== RELATIONSHIPS / TREE API ====================

@api_bp.route('/families/<int:family_id>/relationships', methods=['GET'])
@api_login_required
def get_relationships(family_id):
    member, error = require_member(family_id)
    if error:
        return error
    relationships = Relationship.query.filter_by(family_id=family_id).all()
    return jsonify([r.to_dict() for r in relationships])


@api_bp.route('/families/<int:family_id>/relationships', methods=['POST'])
@api_login_required
def create_relationship(family_id):
    """Edge between two people of the same family"""
    member, error = require_member(family_id, CONTRIBUTORS)
    if error:
        return error
    data = request.get_json() or {}
    relationship_type = data.get('relationship_type')
    if relationship_type not in Relationship.TYPES:
        return jsonify({'error': f'Invalid relationship type: {relationship_type}'}), 400

    from_person = db.session.get(Person, data.get('from_person_id'))
    to_person = db.session.get(Person, data.get('to_person_id'))
    if from_person is None or to_person is None:
        return jsonify({'error': 'Both people must exist'}), 400
    if from_person.family_id != family_id or to_person.family_id != family_id:
        return jsonify({'error': 'Both people must belong to this family'}), 400
    if from_person.id == to_person.id:
        return jsonify({'error': 'A person cannot be related to themselves'}), 400

    existing = Relationship.query.filter_by(from_person_id=from_person.id, to_person_id=to_person.id,
                                            relationship_type=relationship_type).first()
    if existing:
        return jsonify({'error': 'Relationship already exists', 'relationship': existing.to_dict()}), 409

    relationship = Relationship(family_id=family_id, from_person_id=from_person.id,
                                to_person_id=to_person.id, relationship_type=relationship_type)
    db.session.add(relationship)
    _commit()
    return jsonify(relationship.to_dict()), 201


@api_bp.route('/relationships/<int:relationship_id>', methods=['DELETE'])
@api_login_required
def delete_relationship(relationship_id):
    relationship = db.get_or_404(Relationship, relationship_id)
    member, error = require_member(relationship.family_id, CONTRIBUTORS)
    if error:
        return error
    db.session.delete(relationship)
    _commit()
    return '', 204


@api_bp.route('/families/<int:family_id>/tree/connections', methods=['POST'])
@api_login_required
def tree_connections(family_id):
    """
    Connector lines for the tree canvas.

    Body: {positions: {person_id: {x, y}}, selected_person_id?, format?: json|svg}
    """
    member, error = require_member(family_id)
    if error:
        return error
    data = request.get_json() or {}
    positions = data.get('positions') or {}
    selected = data.get('selected_person_id')

    people = Person.query.filter_by(family_id=family_id).all()
    relationships = Relationship.query.filter_by(family_id=family_id).all()

    if data.get('format') == 'svg':
        svg = render_svg(relationships, positions, selected, people)
        if svg is None:
            return jsonify({'error': 'No positioned people'}), 400
        return Response(svg, mimetype='image/svg+xml')

    return jsonify(build_connections(relationships, positions, selected, people))


# ==================== STORIES API ====================

@api_bp.route('/families/<int:family_id>/stories', methods=['GET'])
@api_login_required
def get_stories(family_id):
    """Published stories plus the caller's own drafts and private stories"""
    member, error = require_member(family_id)
    if error:
        return error
    profile = current_profile()
    query = Story.query.filter(
        Story.family_id == family_id,
        or_(Story.profile_id == profile.id,
            (Story.status == 'published') & (Story.visibility != 'private'))
    )
    person_id = request.args.get('person_id', type=int)
    if person_id:
        query = query.filter(Story.people.any(Person.id == person_id))

    stories = query.order_by(Story.created_at.desc()).all()
    return jsonify([s.to_dict() for s in stories])


@api_bp.route('/families/<int:family_id>/stories', methods=['POST'])
@api_login_required
def create_family_story(family_id):
    """JSON or multipart (photos in the 'files' field)"""
    member, error = require_member(family_id, CONTRIBUTORS)
    if error:
        return error
    try:
        result = create_story(family_id, current_profile(), _request_data(), request.files.getlist('files'))
    except ValidationError as exc:
        return jsonify({'error': str(exc)}), 400

    data = result['story'].to_dict()
    data['media'] = [m.to_dict() for m in result['media']]
    data['warnings'] = result['warnings']
    return jsonify(data), 201


@api_bp.route('/stories/<int:story_id>', methods=['GET'])
@api_login_required
def get_story(story_id):
    story = db.get_or_404(Story, story_id)
    member, error = require_member(story.family_id)
    if error:
        return error
    if not _can_see_story(story, current_profile()):
        abort(404)
    data = story.to_dict()
    data['author'] = story.author.full_name if story.author else None
    data['media'] = [m.to_dict() for m in story.media]
    data['comments'] = [c.to_dict() for c in story.comments]
    data['reactions'] = [r.to_dict() for r in story.reactions]
    return jsonify(data)


@api_bp.route('/stories/<int:story_id>', methods=['PUT'])
@api_login_required
def update_story(story_id):
    """Author edits; family admins may change visibility"""
    story = db.get_or_404(Story, story_id)
    member, error = require_member(story.family_id)
    if error:
        return error
    if story.profile_id != member.profile_id and member.role != 'admin':
        return jsonify({'error': 'Only the author can edit this story'}), 403

    data = request.get_json() or {}
    try:
        if 'title' in data:
            if not (data['title'] or '').strip():
                raise ValidationError('Title is required')
            story.title = data['title'].strip()
        if 'content' in data:
            story.content = data['content']
        if 'occurred_on' in data:
            story.occurred_on, story.is_approx = parse_date(data['occurred_on'], 'occurred_on')
        if 'tags' in data:
            story.tags = normalize_tags(data['tags'])
        if 'status' in data:
            if data['status'] not in STORY_STATUSES:
                raise ValidationError(f"Invalid status: {data['status']}")
            story.status = data['status']
        if 'visibility' in data:
            if data['visibility'] not in VISIBILITIES:
                raise ValidationError(f"Invalid visibility: {data['visibility']}")
            story.visibility = data['visibility']
        if 'person_ids' in data:
            story.people = family_people(story.family_id, data['person_ids'])
    except ValidationError as exc:
        db.session.rollback()
        return jsonify({'error': str(exc)}), 400

    _commit()
    return jsonify(story.to_dict())


@api_bp.route('/stories/<int:story_id>', methods=['DELETE'])
@api_login_required
def delete_story(story_id):
    story = db.get_or_404(Story, story_id)
    member, error = require_member(story.family_id)
    if error:
        return error
    if story.profile_id != member.profile_id and member.role != 'admin':
        return jsonify({'error': 'Only the author can delete this story'}), 403
    for media in story.media:
        media.story_id = None
    db.session.delete(story)
    _commit()
    return '', 204


@api_bp.route('/stories/<int:story_id>/comments', methods=['POST'])
@api_login_required
def add_comment(story_id):
    story = db.get_or_404(Story, story_id)
    member, error = require_member(story.family_id)
    if error:
        return error
    content = ((request.get_json() or {}).get('content') or '').strip()
    if not content:
        return jsonify({'error': 'Comment cannot be empty'}), 400
    comment = Comment(story_id=story.id, family_id=story.family_id,
                      profile_id=member.profile_id, content=content)
    db.session.add(comment)
    _commit()
    return jsonify(comment.to_dict()), 201


@api_bp.route('/comments/<int:comment_id>', methods=['DELETE'])
@api_login_required
def delete_comment(comment_id):
    comment = db.get_or_404(Comment, comment_id)
    member, error = require_member(comment.family_id)
    if error:
        return error
    if comment.profile_id != member.profile_id and member.role != 'admin':
        return jsonify({'error': 'Only the author can delete this comment'}), 403
    db.session.delete(comment)
    _commit()
    return '', 204


@api_bp.route('/stories/<int:story_id>/reactions', methods=['POST'])
@api_login_required
def toggle_reaction(story_id):
    """Add the reaction, or remove it when the caller already reacted the same way"""
    story = db.get_or_404(Story, story_id)
    member, error = require_member(story.family_id)
    if error:
        return error
    reaction_type = (request.get_json() or {}).get('reaction_type')
    if not reaction_type:
        return jsonify({'error': 'reaction_type is required'}), 400

    existing = Reaction.query.filter_by(story_id=story.id, profile_id=member.profile_id,
                                        reaction_type=reaction_type).first()
    if existing:
        db.session.delete(existing)
        _commit()
        return jsonify({'reacted': False, 'reaction_type': reaction_type})

    db.session.add(Reaction(story_id=story.id, family_id=story.family_id,
                            profile_id=member.profile_id, reaction_type=reaction_type))
    _commit()
    return jsonify({'reacted': True, 'reaction_type': reaction_type}), 201


# ==================== MEDIA API ====================

@api_bp.route('/families/<int:family_id>/media', methods=['GET'])
@api_login_required
def get_media(family_id):
    member, error = require_member(family_id)
    if error:
        return error
    query = Media.query.filter(Media.family_id == family_id,
                               or_(Media.visibility != 'private', Media.profile_id == member.profile_id))
    return jsonify([m.to_dict() for m in query.order_by(Media.created_at.desc()).all()])


@api_bp.route('/families/<int:family_id>/media', methods=['POST'])
@api_login_required
def upload_media(family_id):
    member, error = require_member(family_id, CONTRIBUTORS)
    if error:
        return error
    if 'file' not in request.files:
        return jsonify({'error': 'No file'}), 400

    visibility = request.form.get('visibility') or 'family'
    if visibility not in VISIBILITIES:
        return jsonify({'error': f'Invalid visibility: {visibility}'}), 400
    story_id = request.form.get('story_id', type=int)
    if story_id is not None:
        story = db.session.get(Story, story_id)
        if story is None or story.family_id != family_id:
            return jsonify({'error': 'Story does not belong to this family'}), 400
    try:
        media = save_upload(request.files['file'], family_id, member.profile_id,
                            story_id=story_id,
                            caption=request.form.get('caption'), visibility=visibility)
    except ValidationError as exc:
        return jsonify({'error': str(exc)}), 400
    _commit()
    return jsonify(media.to_dict()), 201


@api_bp.route('/media/<int:media_id>/tags', methods=['POST'])
@api_login_required
def add_media_tag(media_id):
    """Tag a person on a photo, optionally with a face region"""
    media = db.get_or_404(Media, media_id)
    member, error = require_member(media.family_id, CONTRIBUTORS)
    if error:
        return error
    data = request.get_json() or {}
    person = db.session.get(Person, data.get('person_id'))
    if person is None:
        return jsonify({'error': 'Person not found'}), 404
    try:
        tag = tag_person(media, person, data.get('region'), current_profile())
    except ValidationError as exc:
        return jsonify({'error': str(exc)}), 400
    return jsonify(tag.to_dict()), 201


@api_bp.route('/media/<int:media_id>/tags/<int:person_id>', methods=['DELETE'])
@api_login_required
def remove_media_tag(media_id, person_id):
    media = db.get_or_404(Media, media_id)
    member, error = require_member(media.family_id, CONTRIBUTORS)
    if error:
        return error
    tag = next((t for t in media.tags if t.person_id == person_id), None)
    if tag is None:
        abort(404)
    db.session.delete(tag)
    _commit()
    return '', 204


# ==================== LIFE EVENTS / TRIBUTES API ====================

@api_bp.route('/families/<int:family_id>/events', methods=['GET'])
@api_login_required
def get_life_events(family_id):
    member, error = require_member(family_id)
    if error:
        return error
    events = LifeEvent.query.filter_by(family_id=family_id).order_by(LifeEvent.event_date).all()
    return jsonify([e.to_dict() for e in events])


@api_bp.route('/families/<int:family_id>/events', methods=['POST'])
@api_login_required
def create_life_event(family_id):
    member, error = require_member(family_id, CONTRIBUTORS)
    if error:
        return error
    data = request.get_json() or {}
    title = (data.get('title') or '').strip()
    if not title:
        return jsonify({'error': 'Title is required'}), 400
    try:
        event_date, _ = parse_date(data.get('event_date'), 'event_date')
        if data.get('person_id') is not None:
            family_people(family_id, [data['person_id']])
    except ValidationError as exc:
        return jsonify({'error': str(exc)}), 400

    event = LifeEvent(family_id=family_id, person_id=data.get('person_id'), title=title,
                      event_date=event_date, created_by=member.profile_id)
    db.session.add(event)
    _commit()
    return jsonify(event.to_dict()), 201


@api_bp.route('/families/<int:family_id>/tributes', methods=['GET'])
@api_login_required
def get_tributes(family_id):
    member, error = require_member(family_id)
    if error:
        return error
    tributes = (Tribute.query
                .filter(Tribute.family_id == family_id,
                        or_(Tribute.privacy != 'private', Tribute.created_by == member.profile_id))
                .order_by(Tribute.created_at.desc())
                .all())
    return jsonify([t.to_dict() for t in tributes])


@api_bp.route('/families/<int:family_id>/tributes', methods=['POST'])
@api_login_required
def create_family_tribute(family_id):
    member, error = require_member(family_id, CONTRIBUTORS)
    if error:
        return error
    try:
        tribute = create_tribute(family_id, current_profile(), request.get_json() or {})
    except ValidationError as exc:
        return jsonify({'error': str(exc)}), 400
    return jsonify(tribute.to_dict()), 201


# ==================== PROMPTS API ====================

@api_bp.route('/prompts', methods=['GET'])
@api_login_required
def get_prompt_state():
    return jsonify(prompts.prompt_state(current_profile().id))


@api_bp.route('/prompts/shuffle', methods=['POST'])
@api_login_required
def shuffle_prompt():
    return jsonify(prompts.shuffle_prompt(current_profile().id))


@api_bp.route('/prompts/<prompt_id>/complete', methods=['POST'])
@api_login_required
def complete_prompt(prompt_id):
    data = request.get_json() or {}
    try:
        result = prompts.mark_completed(current_profile().id, prompt_id,
                                        data.get('response_length', 0), data.get('topics'))
    except KeyError:
        return jsonify({'error': f'Unknown prompt: {prompt_id}'}), 404
    return jsonify(result)


# ==================== DIGEST API ====================

@api_bp.route('/families/<int:family_id>/digest/settings', methods=['GET'])
@api_login_required
def get_digest_settings(family_id):
    member, error = require_member(family_id)
    if error:
        return error
    settings = DigestSettings.query.filter_by(family_id=family_id).first()
    if settings is None:
        return jsonify({'family_id': family_id, 'enabled': False, 'is_paused': False, 'delivery_day': 0})
    return jsonify(settings.to_dict())


@api_bp.route('/families/<int:family_id>/digest/settings', methods=['PUT'])
@api_login_required
def update_digest_settings(family_id):
    member, error = require_member(family_id, ADMIN)
    if error:
        return error
    data = request.get_json() or {}
    if 'delivery_day' in data and data['delivery_day'] not in range(7):
        return jsonify({'error': 'delivery_day must be between 0 (Sunday) and 6'}), 400

    settings = DigestSettings.query.filter_by(family_id=family_id).first()
    if settings is None:
        settings = DigestSettings(family_id=family_id)
        db.session.add(settings)
    for field in ['enabled', 'is_paused']:
        if field in data:
            setattr(settings, field, bool(data[field]))
    if 'delivery_day' in data:
        settings.delivery_day = data['delivery_day']
    _commit()
    return jsonify(settings.to_dict())


@api_bp.route('/families/<int:family_id>/digest/preview', methods=['GET'])
@api_login_required
def preview_digest(family_id):
    member, error = require_member(family_id)
    if error:
        return error
    try:
        return jsonify(digest_preview(family_id))
    except DigestError as exc:
        return jsonify({'error': exc.message}), exc.status


@api_bp.route('/families/<int:family_id>/digest/send', methods=['POST'])
@api_login_required
def send_family_digest(family_id):
    """Send now; {force: true} also sends while the digest is paused"""
    member, error = require_member(family_id, ADMIN)
    if error:
        return error
    force = bool((request.get_json(silent=True) or {}).get('force'))
    try:
        result = send_digest(family_id, 'forced' if force else 'scheduled', sent_by=member.profile_id)
    except DigestError as exc:
        return jsonify({'error': exc.message}), exc.status
    except MailerError as exc:
        return jsonify({'error': str(exc)}), 500
    return jsonify(result)


@api_bp.route('/admin/digests/run', methods=['POST'])
@platform_admin_required
def run_due_digests():
    """Trigger for an external cron: send every digest due today"""
    try:
        results = send_due_digests()
    except MailerError as exc:
        return jsonify({'error': str(exc)}), 500
    return jsonify({'sent': results})


# ==================== DRAFTS API ====================

def _draft_manager():
    prefix = request.args.get('prefix', 'unified')
    return DraftManager(ProfileStorage(current_profile().id), prefix=prefix,
                        autosave_interval=current_app.config['DRAFT_AUTOSAVE_INTERVAL'])


@api_bp.route('/drafts', methods=['GET'])
@api_login_required
def list_drafts():
    manager = _draft_manager()
    return jsonify(manager.load_all_drafts())


@api_bp.route('/drafts', methods=['POST'])
@api_login_required
def save_draft():
    manager = _draft_manager()
    data = request.get_json() or {}
    if not data.get('id'):
        data['id'] = manager.new_draft_id(data.get('type') or 'text')
    draft = manager.save_draft(data)
    if draft is None:
        return jsonify(manager.status), 400
    return jsonify({'draft': draft, 'status': manager.status})


@api_bp.route('/drafts/<draft_id>', methods=['GET'])
@api_login_required
def get_draft(draft_id):
    draft = _draft_manager().load_draft(draft_id)
    if draft is None:
        return jsonify({'error': 'Draft not found or expired'}), 404
    return jsonify(draft)


@api_bp.route('/drafts/<draft_id>', methods=['DELETE'])
@api_login_required
def delete_draft(draft_id):
    _draft_manager().clear_draft(draft_id)
    return '', 204


@api_bp.route('/drafts', methods=['DELETE'])
@api_login_required
def delete_all_drafts():
    _draft_manager().clear_all_drafts()
    return '', 204


@api_bp.route('/preferences/<key>', methods=['GET'])
@api_login_required
def get_preference(key):
    """Last-used UI choices (e.g. story composer mode)"""
    value = ProfileStorage(current_profile().id).get_item(f'pref_{key}')
    return jsonify({'key': key, 'value': json.loads(value) if value else None})


@api_bp.route('/preferences/<key>', methods=['PUT'])
@api_login_required
def set_preference(key):
    value = (request.get_json() or {}).get('value')
    ProfileStorage(current_profile().id).set_item(f'pref_{key}', json.dumps(value))
    return jsonify({'key': key, 'value': value})


# ==================== ANALYTICS API ====================

@api_bp.route('/admin/analytics/activation', methods=['GET'])
@platform_admin_required
def get_activation_report():
    try:
        return jsonify(activation_report(request.args.get('range', '30d')))
    except ValueError as exc:
        return jsonify({'error': str(exc)}), 400


@api_bp.route('/families/<int:family_id>/analytics/engagement', methods=['GET'])
@api_login_required
def get_engagement(family_id):
    member, error = require_member(family_id, ADMIN)
    if error:
        return error
    try:
        start = datetime.fromisoformat(request.args['start']) if request.args.get('start') else None
        end = datetime.fromisoformat(request.args['end']) if request.args.get('end') else None
    except ValueError:
        return jsonify({'error': 'Invalid date range'}), 400
    return jsonify(engagement_summary(family_id, start, end))


# ==================== SEARCH / STATS API ====================

@api_bp.route('/families/<int:family_id>/search', methods=['GET'])
@api_login_required
def search(family_id):
    """People and visible stories matching the query"""
    member, error = require_member(family_id)
    if error:
        return error
    query = request.args.get('q', '').strip()
    if len(query) < 2:
        return jsonify({'people': [], 'stories': []})

    pattern = f'%{query}%'
    people = Person.query.filter(Person.family_id == family_id).filter(
        Person.given_name.ilike(pattern) |
        Person.surname.ilike(pattern) |
        Person.preferred_name.ilike(pattern)
    ).limit(20).all()

    profile = current_profile()
    stories = Story.query.filter(Story.family_id == family_id).filter(
        Story.title.ilike(pattern) | Story.content.ilike(pattern) | Story.tags.ilike(pattern)
    ).order_by(Story.created_at.desc()).limit(20).all()

    return jsonify({
        'people': [p.to_dict() for p in people],
        'stories': [s.to_dict() for s in stories if _can_see_story(s, profile)]
    })


@api_bp.route('/families/<int:family_id>/stats', methods=['GET'])
@api_login_required
def get_stats(family_id):
    member, error = require_member(family_id)
    if error:
        return error
    people = Person.query.filter_by(family_id=family_id)
    total_people = people.count()
    living_people = people.filter(Person.is_living.is_(True)).count()

    return jsonify({
        'total_people': total_people,
        'living_people': living_people,
        'deceased_people': total_people - living_people,
        'members': Member.query.filter_by(family_id=family_id).count(),
        'stories': Story.query.filter_by(family_id=family_id, status='published').count(),
        'photos': Media.query.filter(Media.family_id == family_id, Media.mime_type.like('image/%')).count(),
        'relationships': Relationship.query.filter_by(family_id=family_id).count(),
        'tributes': Tribute.query.filter_by(family_id=family_id).count()
    })
