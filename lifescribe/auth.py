"""
Authentication for LifeScribe.
Session-based login over profiles, passwords hashed with Werkzeug.
"""

from functools import wraps
from flask import session, redirect, url_for, request, jsonify, g
from werkzeug.security import generate_password_hash, check_password_hash

from lifescribe import db


MIN_PASSWORD_LENGTH = 8


def set_password(profile, new_password):
    """
    Set a new password on a profile (not committed).

    Returns:
        bool: whether the password was accepted
    """
    if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
        return False

    profile.password_hash = generate_password_hash(new_password, method='pbkdf2:sha256')
    return True


def register_profile(email, password, full_name=None):
    """
    Create a profile.

    Returns:
        dict: {'profile': Profile} or {'error': message}
    """
    from lifescribe.models import Profile

    email = (email or '').strip().lower()
    if not email or '@' not in email:
        return {'error': 'A valid email is required'}
    if Profile.query.filter_by(email=email).first():
        return {'error': 'An account with this email already exists'}

    profile = Profile(email=email, full_name=(full_name or '').strip() or None)
    if not set_password(profile, password):
        return {'error': f'Password must be at least {MIN_PASSWORD_LENGTH} characters'}

    db.session.add(profile)
    db.session.commit()
    return {'profile': profile}


def verify_password(email, password):
    """
    Check credentials.

    Returns:
        Profile or None
    """
    from lifescribe.models import Profile

    profile = Profile.query.filter_by(email=(email or '').strip().lower()).first()
    if not profile or not profile.password_hash:
        return None
    if not check_password_hash(profile.password_hash, password or ''):
        return None
    return profile


def change_password(profile, current_password, new_password):
    if not profile.password_hash or not check_password_hash(profile.password_hash, current_password or ''):
        return {'error': 'Current password is incorrect'}

    if not set_password(profile, new_password):
        return {'error': f'The new password must be at least {MIN_PASSWORD_LENGTH} characters'}

    db.session.commit()
    return {'success': True, 'message': 'Password changed'}


def is_authenticated():
    return session.get('profile_id') is not None


def current_profile():
    """The signed-in profile, cached on flask.g for the request"""
    from lifescribe.models import Profile

    profile_id = session.get('profile_id')
    if profile_id is None:
        return None
    if getattr(g, 'profile', None) is None or g.profile.id != profile_id:
        g.profile = db.session.get(Profile, profile_id)
    return g.profile


def login_user(profile):
    session['profile_id'] = profile.id
    session.permanent = True  # 31 day session


def logout_user():
    session.pop('profile_id', None)
    g.pop('profile', None)


def get_membership(family_id, profile=None):
    from lifescribe.models import Member

    profile = profile or current_profile()
    if profile is None:
        return None
    return Member.query.filter_by(family_id=family_id, profile_id=profile.id).first()


def require_member(family_id, roles=None):
    """
    Membership check for API handlers.

    Returns:
        tuple: (member, None) when allowed, (None, (response, status)) otherwise
    """
    member = get_membership(family_id)
    if member is None:
        return None, (jsonify({'error': 'Not a member of this family'}), 403)
    if roles and member.role not in roles:
        return None, (jsonify({'error': 'Insufficient role', 'required': list(roles)}), 403)
    return member, None


def login_required(f):
    """
    Protects page routes.
    Redirects to the login page when nobody is signed in.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if current_profile() is None:
            if request.is_json or request.path.startswith('/api/'):
                return jsonify({'error': 'Not signed in', 'redirect': '/login'}), 401
            return redirect(url_for('main.login'))
        return f(*args, **kwargs)
    return decorated_function


def api_login_required(f):
    """
    Protects API routes.
    Answers with JSON 401 when nobody is signed in.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if current_profile() is None:
            return jsonify({'error': 'Not signed in', 'redirect': '/login'}), 401
        return f(*args, **kwargs)
    return decorated_function


def platform_admin_required(f):
    """Admin tooling (analytics, digest scheduling)"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        profile = current_profile()
        if profile is None:
            return jsonify({'error': 'Not signed in', 'redirect': '/login'}), 401
        if not profile.is_admin:
            return jsonify({'error': 'Admin access required'}), 403
        return f(*args, **kwargs)
    return decorated_function
