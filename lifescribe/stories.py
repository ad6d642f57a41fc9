"""
Story, media and tribute creation.
"""

import logging
import os
import uuid
from datetime import datetime

from flask import current_app
from werkzeug.utils import secure_filename

from lifescribe import db
from lifescribe.models import Story, Media, MediaTag, Person, Tribute

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp', 'heic'}
ALLOWED_EXTENSIONS = IMAGE_EXTENSIONS | {'mp3', 'm4a', 'wav', 'webm', 'mp4', 'mov', 'pdf'}

STORY_STATUSES = ('draft', 'published')
VISIBILITIES = ('public', 'family', 'private')


class ValidationError(Exception):
    """Rejected user input; the message is shown to the user"""


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def parse_date(value, field='date'):
    """'YYYY-MM-DD' or 'YYYY' (approximate) -> (date, is_approx)"""
    if not value:
        return None, False
    try:
        if len(value) == 4:
            return datetime.strptime(value, '%Y').date(), True
        return datetime.strptime(value, '%Y-%m-%d').date(), False
    except ValueError:
        raise ValidationError(f'Invalid {field}: {value}')


def family_people(family_id, person_ids):
    """People of the family with the given ids; unknown or foreign ids are an error"""
    try:
        ids = [int(i) for i in person_ids or []]
    except (TypeError, ValueError):
        raise ValidationError('Tagged people must belong to this family')
    if not ids:
        return []
    people = Person.query.filter(Person.family_id == family_id, Person.id.in_(ids)).all()
    if len(people) != len(set(ids)):
        raise ValidationError('Tagged people must belong to this family')
    return people


def normalize_tags(tags):
    """Comma string or list -> stored comma-joined form"""
    if not tags:
        return ''
    if isinstance(tags, str):
        tags = tags.split(',')
    return ','.join(str(t).strip() for t in tags if str(t).strip())


def save_upload(file, family_id, profile_id, story_id=None, caption=None, visibility='family'):
    """
    Store one uploaded file under UPLOAD_FOLDER/<family_id>/ and add a Media row.

    Raises:
        ValidationError: empty or disallowed file
    """
    if file is None or not file.filename:
        raise ValidationError('No file selected')
    if not allowed_file(file.filename):
        raise ValidationError(f'File type not allowed: {file.filename}')

    filename = secure_filename(f'{uuid.uuid4().hex[:12]}_{file.filename}')
    folder = os.path.join(current_app.config['UPLOAD_FOLDER'], str(family_id))
    os.makedirs(folder, exist_ok=True)
    filepath = os.path.join(folder, filename)
    file.save(filepath)

    media = Media(
        family_id=family_id,
        profile_id=profile_id,
        story_id=story_id,
        file_path=f'{family_id}/{filename}',
        file_name=file.filename,
        file_size=os.path.getsize(filepath),
        mime_type=file.mimetype,
        caption=caption,
        visibility=visibility
    )
    db.session.add(media)
    return media


def create_story(family_id, profile, data, files=None):
    """
    Create a story and attach uploaded photos one by one.

    A published photo story needs at least one file. Failed uploads are
    reported as warnings; when every upload fails the story is kept as a
    draft so nothing typed is lost.

    Returns:
        dict: {'story': Story, 'media': [Media], 'warnings': [str]}
    """
    files = [f for f in files or [] if f is not None and f.filename]
    title = (data.get('title') or '').strip()
    if not title:
        raise ValidationError('Title is required')

    status = data.get('status') or 'published'
    if status not in STORY_STATUSES:
        raise ValidationError(f'Invalid status: {status}')
    visibility = data.get('visibility') or 'family'
    if visibility not in VISIBILITIES:
        raise ValidationError(f'Invalid visibility: {visibility}')
    if data.get('story_type') == 'photo' and status != 'draft' and not files:
        raise ValidationError('Please add at least one photo')

    occurred_on, is_approx = parse_date(data.get('occurred_on'), 'occurred_on')

    story = Story(
        family_id=family_id,
        profile_id=profile.id,
        title=title,
        content=data.get('content'),
        occurred_on=occurred_on,
        is_approx=is_approx or bool(data.get('is_approx')),
        tags=normalize_tags(data.get('tags')),
        status=status,
        visibility=visibility
    )
    story.people = family_people(family_id, data.get('person_ids'))
    db.session.add(story)
    db.session.flush()

    uploaded = []
    warnings = []
    for file in files:
        try:
            uploaded.append(save_upload(file, family_id, profile.id, story.id, visibility=visibility))
        except (ValidationError, OSError) as exc:
            logger.warning('Upload of %s failed: %s', file.filename, exc)
            warnings.append(f'{file.filename}: {exc}')

    if files and not uploaded:
        story.status = 'draft'
        warnings.append('No photos could be uploaded; the story was saved as a draft')

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info('Story %s created in family %s (%d uploads, %d warnings)',
                story.id, family_id, len(uploaded), len(warnings))
    return {'story': story, 'media': uploaded, 'warnings': warnings}


def tag_person(media, person, region=None, profile=None):
    """Tag a person on a photo; an existing tag gets the new region"""
    if person.family_id != media.family_id:
        raise ValidationError('Person and photo belong to different families')

    bounds = {}
    if region:
        for key in ('x', 'y', 'width', 'height'):
            try:
                bounds[key] = float(region.get(key))
            except (TypeError, ValueError):
                raise ValidationError('Region values must be between 0 and 1')
            if not 0 <= bounds[key] <= 1:
                raise ValidationError('Region values must be between 0 and 1')

    tag = MediaTag.query.filter_by(media_id=media.id, person_id=person.id).first()
    if tag is None:
        tag = MediaTag(media_id=media.id, person_id=person.id,
                       created_by=profile.id if profile else None)
        db.session.add(tag)
    for key, value in bounds.items():
        setattr(tag, key, value)
    db.session.commit()
    return tag


def create_tribute(family_id, profile, data):
    title = (data.get('title') or '').strip()
    if not title:
        raise ValidationError('Please provide a title for the tribute')

    privacy = data.get('privacy') or 'family'
    if privacy not in VISIBILITIES:
        raise ValidationError(f'Invalid privacy: {privacy}')

    person_id = data.get('person_id')
    if person_id is not None:
        family_people(family_id, [person_id])

    anniversary_date, _ = parse_date(data.get('anniversary_date'), 'anniversary_date')

    tribute = Tribute(
        family_id=family_id,
        person_id=person_id,
        created_by=profile.id,
        title=title,
        description=data.get('description'),
        theme=data.get('theme') or 'classic',
        privacy=privacy,
        anniversary_date=anniversary_date,
        how_we_met=data.get('how_we_met'),
        what_they_taught_us=data.get('what_they_taught_us'),
        favorite_memory=data.get('favorite_memory')
    )
    db.session.add(tribute)
    db.session.commit()
    return tribute
