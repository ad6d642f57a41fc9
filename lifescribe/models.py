from lifescribe import db
from datetime import datetime, date, timedelta
import json
import uuid


def _iso(value):
    return value.isoformat() if value else None


def _load_json(value, default=None):
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


class Profile(db.Model):
    """A signed-in account"""
    __tablename__ = 'profiles'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    full_name = db.Column(db.String(200))
    password_hash = db.Column(db.String(255))
    simple_mode = db.Column(db.Boolean, default=False)
    is_admin = db.Column(db.Boolean, default=False)  # platform-wide admin tooling
    settings = db.Column(db.Text)  # JSON
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'full_name': self.full_name,
            'simple_mode': self.simple_mode,
            'is_admin': self.is_admin,
            'settings': _load_json(self.settings, {}),
            'created_at': _iso(self.created_at)
        }


class Family(db.Model):
    """A private family space"""
    __tablename__ = 'families'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey('profiles.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    creator = db.relationship('Profile', foreign_keys=[created_by])

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at)
        }


class Member(db.Model):
    """Profile membership in a family"""
    __tablename__ = 'members'

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey('families.id'), nullable=False)
    profile_id = db.Column(db.Integer, db.ForeignKey('profiles.id'), nullable=False)
    role = db.Column(db.String(20), default='member')  # admin, member, guest
    status = db.Column(db.String(20), default='active')
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    family = db.relationship('Family', backref=db.backref('members', lazy='dynamic'))
    profile = db.relationship('Profile', backref='memberships')

    __table_args__ = (
        db.UniqueConstraint('family_id', 'profile_id', name='unique_family_member'),
    )

    def to_dict(self, include_profile=False):
        data = {
            'id': self.id,
            'family_id': self.family_id,
            'profile_id': self.profile_id,
            'role': self.role,
            'status': self.status,
            'joined_at': _iso(self.joined_at)
        }
        if include_profile and self.profile:
            data['profiles'] = {
                'full_name': self.profile.full_name,
                'email': self.profile.email,
                'created_at': _iso(self.profile.created_at),
                'simple_mode': self.profile.simple_mode,
                'settings': _load_json(self.profile.settings, {})
            }
        return data


class Invite(db.Model):
    """Pending or accepted invitation into a family"""
    __tablename__ = 'invites'

    EXPIRY = timedelta(days=7)

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey('families.id'), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), default='member')
    token = db.Column(db.String(64), unique=True, nullable=False, default=lambda: uuid.uuid4().hex)
    invited_by = db.Column(db.Integer, db.ForeignKey('profiles.id'))
    status = db.Column(db.String(20), default='pending')  # pending, accepted
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime)
    accepted_at = db.Column(db.DateTime)

    family = db.relationship('Family', backref=db.backref('invites', lazy='dynamic'))

    @property
    def is_expired(self):
        return self.expires_at is not None and self.expires_at <= datetime.utcnow()

    def to_dict(self):
        return {
            'id': self.id,
            'family_id': self.family_id,
            'email': self.email,
            'role': self.role,
            'status': self.status,
            'invited_by': self.invited_by,
            'created_at': _iso(self.created_at),
            'expires_at': _iso(self.expires_at),
            'accepted_at': _iso(self.accepted_at)
        }


class Person(db.Model):
    """A person in a family tree"""
    __tablename__ = 'people'

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey('families.id'), nullable=False)

    given_name = db.Column(db.String(100), nullable=False)
    surname = db.Column(db.String(100))
    preferred_name = db.Column(db.String(100))
    gender = db.Column(db.String(20), default='unknown')

    birth_date = db.Column(db.Date)
    death_date = db.Column(db.Date)
    is_living = db.Column(db.Boolean, default=True)

    bio = db.Column(db.Text)
    avatar_url = db.Column(db.String(500))

    created_by = db.Column(db.Integer, db.ForeignKey('profiles.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    family = db.relationship('Family', backref=db.backref('people', lazy='dynamic'))

    @property
    def full_name(self):
        return ' '.join(part for part in [self.given_name, self.surname] if part)

    @property
    def age(self):
        if not self.birth_date:
            return None
        end_date = self.death_date if self.death_date else date.today()
        age = end_date.year - self.birth_date.year
        if (end_date.month, end_date.day) < (self.birth_date.month, self.birth_date.day):
            age -= 1
        return age

    def to_dict(self):
        return {
            'id': self.id,
            'family_id': self.family_id,
            'given_name': self.given_name,
            'surname': self.surname,
            'preferred_name': self.preferred_name,
            'full_name': self.full_name,
            'gender': self.gender,
            'birth_date': _iso(self.birth_date),
            'death_date': _iso(self.death_date),
            'is_living': self.is_living,
            'age': self.age,
            'bio': self.bio,
            'avatar_url': self.avatar_url,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


class Relationship(db.Model):
    """
    Directed edge between two people.

    parent: from_person is a parent of to_person
    spouse: from_person and to_person are partners
    child:  from_person is a child of to_person
    """
    __tablename__ = 'relationships'

    TYPES = ('parent', 'spouse', 'child')

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey('families.id'), nullable=False)
    from_person_id = db.Column(db.Integer, db.ForeignKey('people.id'), nullable=False)
    to_person_id = db.Column(db.Integer, db.ForeignKey('people.id'), nullable=False)
    relationship_type = db.Column(db.String(20), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    from_person = db.relationship('Person', foreign_keys=[from_person_id])
    to_person = db.relationship('Person', foreign_keys=[to_person_id])

    def to_dict(self):
        return {
            'id': self.id,
            'family_id': self.family_id,
            'from_person_id': self.from_person_id,
            'to_person_id': self.to_person_id,
            'relationship_type': self.relationship_type
        }


story_people = db.Table('story_people',
    db.Column('story_id', db.Integer, db.ForeignKey('stories.id'), primary_key=True),
    db.Column('person_id', db.Integer, db.ForeignKey('people.id'), primary_key=True)
)


class Story(db.Model):
    """A shared family memory"""
    __tablename__ = 'stories'

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey('families.id'), nullable=False)
    profile_id = db.Column(db.Integer, db.ForeignKey('profiles.id'))

    title = db.Column(db.String(300), nullable=False)
    content = db.Column(db.Text)
    occurred_on = db.Column(db.Date)
    is_approx = db.Column(db.Boolean, default=False)  # year-only date
    tags = db.Column(db.String(500))  # comma separated
    status = db.Column(db.String(20), default='published')  # draft, published
    visibility = db.Column(db.String(20), default='family')  # public, family, private

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    family = db.relationship('Family', backref=db.backref('stories', lazy='dynamic'))
    author = db.relationship('Profile', foreign_keys=[profile_id])
    people = db.relationship('Person', secondary=story_people, backref='stories')

    @property
    def tag_list(self):
        return [t.strip() for t in (self.tags or '').split(',') if t.strip()]

    @property
    def excerpt(self):
        if not self.content:
            return None
        return self.content[:200] + ('...' if len(self.content) > 200 else '')

    def to_dict(self):
        return {
            'id': self.id,
            'family_id': self.family_id,
            'profile_id': self.profile_id,
            'title': self.title,
            'content': self.content,
            'occurred_on': _iso(self.occurred_on),
            'is_approx': self.is_approx,
            'tags': self.tag_list,
            'status': self.status,
            'visibility': self.visibility,
            'people': [{'id': p.id, 'name': p.full_name} for p in self.people],
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


class Comment(db.Model):
    __tablename__ = 'comments'

    id = db.Column(db.Integer, primary_key=True)
    story_id = db.Column(db.Integer, db.ForeignKey('stories.id'), nullable=False)
    family_id = db.Column(db.Integer, db.ForeignKey('families.id'), nullable=False)
    profile_id = db.Column(db.Integer, db.ForeignKey('profiles.id'))
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    story = db.relationship('Story', backref=db.backref('comments', cascade='all, delete-orphan'))
    author = db.relationship('Profile', foreign_keys=[profile_id])

    def to_dict(self):
        return {
            'id': self.id,
            'story_id': self.story_id,
            'content': self.content,
            'created_at': _iso(self.created_at),
            'profiles': {'full_name': self.author.full_name if self.author else None}
        }


class Reaction(db.Model):
    __tablename__ = 'reactions'

    id = db.Column(db.Integer, primary_key=True)
    story_id = db.Column(db.Integer, db.ForeignKey('stories.id'), nullable=False)
    family_id = db.Column(db.Integer, db.ForeignKey('families.id'), nullable=False)
    profile_id = db.Column(db.Integer, db.ForeignKey('profiles.id'))
    reaction_type = db.Column(db.String(30), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    story = db.relationship('Story', backref=db.backref('reactions', cascade='all, delete-orphan'))
    author = db.relationship('Profile', foreign_keys=[profile_id])

    __table_args__ = (
        db.UniqueConstraint('story_id', 'profile_id', 'reaction_type', name='unique_reaction'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'story_id': self.story_id,
            'reaction_type': self.reaction_type,
            'created_at': _iso(self.created_at),
            'profiles': {'full_name': self.author.full_name if self.author else None}
        }


class Media(db.Model):
    """Uploaded photo, audio or video"""
    __tablename__ = 'media'

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey('families.id'), nullable=False)
    profile_id = db.Column(db.Integer, db.ForeignKey('profiles.id'))
    story_id = db.Column(db.Integer, db.ForeignKey('stories.id'))

    file_path = db.Column(db.String(500), nullable=False)
    file_name = db.Column(db.String(255))
    file_size = db.Column(db.Integer)
    mime_type = db.Column(db.String(100))
    caption = db.Column(db.String(500))
    visibility = db.Column(db.String(20), default='family')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    story = db.relationship('Story', backref='media')

    @property
    def url(self):
        return f'/uploads/{self.file_path}'

    @property
    def is_image(self):
        return (self.mime_type or '').startswith('image/')

    def to_dict(self):
        return {
            'id': self.id,
            'family_id': self.family_id,
            'story_id': self.story_id,
            'file_name': self.file_name,
            'file_size': self.file_size,
            'mime_type': self.mime_type,
            'caption': self.caption,
            'visibility': self.visibility,
            'url': self.url,
            'tags': [t.to_dict() for t in self.tags],
            'created_at': _iso(self.created_at)
        }


class MediaTag(db.Model):
    """A person tagged on a photo, optionally on a face region (0..1 coordinates)"""
    __tablename__ = 'media_tags'

    id = db.Column(db.Integer, primary_key=True)
    media_id = db.Column(db.Integer, db.ForeignKey('media.id'), nullable=False)
    person_id = db.Column(db.Integer, db.ForeignKey('people.id'), nullable=False)
    x = db.Column(db.Float)
    y = db.Column(db.Float)
    width = db.Column(db.Float)
    height = db.Column(db.Float)
    created_by = db.Column(db.Integer, db.ForeignKey('profiles.id'))

    media = db.relationship('Media', backref=db.backref('tags', cascade='all, delete-orphan'))
    person = db.relationship('Person')

    __table_args__ = (
        db.UniqueConstraint('media_id', 'person_id', name='unique_media_person'),
    )

    def to_dict(self):
        region = None
        if self.x is not None and self.y is not None:
            region = {'x': self.x, 'y': self.y, 'width': self.width, 'height': self.height}
        return {
            'id': self.id,
            'media_id': self.media_id,
            'person_id': self.person_id,
            'person_name': self.person.full_name if self.person else None,
            'region': region
        }


class LifeEvent(db.Model):
    """Important date recorded for a family (birthday, anniversary, ...)"""
    __tablename__ = 'life_events'

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey('families.id'), nullable=False)
    person_id = db.Column(db.Integer, db.ForeignKey('people.id'))
    title = db.Column(db.String(200), nullable=False)
    event_date = db.Column(db.Date)
    created_by = db.Column(db.Integer, db.ForeignKey('profiles.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'family_id': self.family_id,
            'person_id': self.person_id,
            'title': self.title,
            'event_date': _iso(self.event_date),
            'created_at': _iso(self.created_at)
        }


class Tribute(db.Model):
    """Memorial page for a person"""
    __tablename__ = 'tributes'

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey('families.id'), nullable=False)
    person_id = db.Column(db.Integer, db.ForeignKey('people.id'))
    created_by = db.Column(db.Integer, db.ForeignKey('profiles.id'))

    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text)
    theme = db.Column(db.String(50), default='classic')
    privacy = db.Column(db.String(20), default='family')  # public, family, private
    anniversary_date = db.Column(db.Date)
    how_we_met = db.Column(db.Text)
    what_they_taught_us = db.Column(db.Text)
    favorite_memory = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    person = db.relationship('Person')

    def to_dict(self):
        return {
            'id': self.id,
            'family_id': self.family_id,
            'person_id': self.person_id,
            'person_name': self.person.full_name if self.person else None,
            'created_by': self.created_by,
            'title': self.title,
            'description': self.description,
            'theme': self.theme,
            'privacy': self.privacy,
            'anniversary_date': _iso(self.anniversary_date),
            'how_we_met': self.how_we_met,
            'what_they_taught_us': self.what_they_taught_us,
            'favorite_memory': self.favorite_memory,
            'created_at': _iso(self.created_at)
        }


class PersonRole(db.Model):
    """Who may manage a person page: owner, steward, contributor, viewer"""
    __tablename__ = 'person_roles'

    id = db.Column(db.Integer, primary_key=True)
    person_id = db.Column(db.Integer, db.ForeignKey('people.id'), nullable=False)
    profile_id = db.Column(db.Integer, db.ForeignKey('profiles.id'), nullable=False)
    role = db.Column(db.String(20), nullable=False)
    granted_at = db.Column(db.DateTime, default=datetime.utcnow)
    revoked_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'person_id': self.person_id,
            'profile_id': self.profile_id,
            'role': self.role,
            'granted_at': _iso(self.granted_at),
            'revoked_at': _iso(self.revoked_at)
        }


class PersonPageBlock(db.Model):
    """One block of a person page (hero, story, gallery, timeline, ...)"""
    __tablename__ = 'person_page_blocks'

    id = db.Column(db.Integer, primary_key=True)
    person_id = db.Column(db.Integer, db.ForeignKey('people.id'), nullable=False)
    block_type = db.Column(db.String(50), nullable=False)
    content_id = db.Column(db.Integer)  # story or media id depending on block_type
    position = db.Column(db.Integer, default=0)
    visibility = db.Column(db.String(20), default='family')

    def to_dict(self):
        return {
            'id': self.id,
            'person_id': self.person_id,
            'block_type': self.block_type,
            'content_id': self.content_id,
            'position': self.position,
            'visibility': self.visibility
        }


class PersonPageTheme(db.Model):
    __tablename__ = 'person_page_themes'

    id = db.Column(db.Integer, primary_key=True)
    person_id = db.Column(db.Integer, db.ForeignKey('people.id'), unique=True, nullable=False)
    settings = db.Column(db.Text)  # JSON

    def to_dict(self):
        return {
            'id': self.id,
            'person_id': self.person_id,
            'settings': _load_json(self.settings, {})
        }


class ExportJob(db.Model):
    """Bookkeeping for person exports"""
    __tablename__ = 'export_jobs'

    id = db.Column(db.Integer, primary_key=True)
    person_id = db.Column(db.Integer, db.ForeignKey('people.id'))
    family_id = db.Column(db.Integer, db.ForeignKey('families.id'))
    created_by = db.Column(db.Integer, db.ForeignKey('profiles.id'))
    export_type = db.Column(db.String(20))
    include_private = db.Column(db.Boolean, default=False)
    status = db.Column(db.String(20), default='processing')  # processing, completed, failed
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime)
    file_size_bytes = db.Column(db.Integer)
    job_metadata = db.Column('metadata', db.Text)  # JSON

    def to_dict(self):
        return {
            'id': self.id,
            'person_id': self.person_id,
            'family_id': self.family_id,
            'created_by': self.created_by,
            'export_type': self.export_type,
            'include_private': self.include_private,
            'status': self.status,
            'created_at': _iso(self.created_at),
            'completed_at': _iso(self.completed_at),
            'file_size_bytes': self.file_size_bytes,
            'metadata': _load_json(self.job_metadata, {})
        }


class DigestSettings(db.Model):
    """Weekly digest settings of a family"""
    __tablename__ = 'weekly_digest_settings'

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey('families.id'), unique=True, nullable=False)
    enabled = db.Column(db.Boolean, default=True)
    is_paused = db.Column(db.Boolean, default=False)
    delivery_day = db.Column(db.Integer, default=0)  # 0 = Sunday
    last_sent_at = db.Column(db.DateTime)
    last_forced_send_at = db.Column(db.DateTime)
    forced_send_by = db.Column(db.Integer, db.ForeignKey('profiles.id'))
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'family_id': self.family_id,
            'enabled': self.enabled,
            'is_paused': self.is_paused,
            'delivery_day': self.delivery_day,
            'last_sent_at': _iso(self.last_sent_at),
            'last_forced_send_at': _iso(self.last_forced_send_at),
            'forced_send_by': self.forced_send_by
        }


class DigestSendLog(db.Model):
    """One sent digest per family and week"""
    __tablename__ = 'digest_send_log'

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey('families.id'), nullable=False)
    digest_week = db.Column(db.Date, nullable=False)
    send_type = db.Column(db.String(20), default='scheduled')  # scheduled, forced
    sent_by = db.Column(db.Integer, db.ForeignKey('profiles.id'))
    recipient_count = db.Column(db.Integer, default=0)
    content_summary = db.Column(db.Text)  # JSON
    sent_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('family_id', 'digest_week', name='unique_family_digest_week'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'family_id': self.family_id,
            'digest_week': _iso(self.digest_week),
            'send_type': self.send_type,
            'sent_by': self.sent_by,
            'recipient_count': self.recipient_count,
            'content_summary': _load_json(self.content_summary, {}),
            'sent_at': _iso(self.sent_at)
        }


class PromptHistory(db.Model):
    __tablename__ = 'user_prompt_history'

    id = db.Column(db.Integer, primary_key=True)
    profile_id = db.Column(db.Integer, db.ForeignKey('profiles.id'), nullable=False)
    prompt_id = db.Column(db.String(100), nullable=False)
    used_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed = db.Column(db.Boolean, default=False)
    action = db.Column(db.String(20))  # shuffled, completed
    response_length = db.Column(db.Integer)
    response_topics = db.Column(db.String(500))  # comma separated

    def to_dict(self):
        return {
            'prompt_id': self.prompt_id,
            'used_at': _iso(self.used_at),
            'completed': self.completed,
            'action': self.action,
            'response_length': self.response_length,
            'topics': [t for t in (self.response_topics or '').split(',') if t]
        }


class UserStreak(db.Model):
    __tablename__ = 'user_streaks'

    id = db.Column(db.Integer, primary_key=True)
    profile_id = db.Column(db.Integer, db.ForeignKey('profiles.id'), unique=True, nullable=False)
    current_streak = db.Column(db.Integer, default=0)
    longest_streak = db.Column(db.Integer, default=0)
    total_completed = db.Column(db.Integer, default=0)
    last_completed_on = db.Column(db.Date)

    def to_dict(self):
        return {
            'current_streak': self.current_streak or 0,
            'longest_streak': self.longest_streak or 0,
            'total_completed': self.total_completed or 0,
            'last_completed_on': _iso(self.last_completed_on)
        }


class StorageItem(db.Model):
    """Per-profile key/value storage (drafts, last-used UI preferences)"""
    __tablename__ = 'storage_items'

    id = db.Column(db.Integer, primary_key=True)
    profile_id = db.Column(db.Integer, db.ForeignKey('profiles.id'), nullable=False)
    key = db.Column(db.String(200), nullable=False)
    value = db.Column(db.Text)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('profile_id', 'key', name='unique_profile_storage_key'),
    )
