"""
Export endpoints, mounted under /functions/v1.

export-family-data  admin export of a family's stories, engagement, members
                    or everything, as JSON or CSV
export-person-data  export of one person page as JSON or as a printable
                    HTML mini-book
"""

import csv
import io
import json
import logging
import time
from datetime import datetime

from flask import Blueprint, request, jsonify, make_response, render_template

from lifescribe import db
from lifescribe.analytics import engagement_summary
from lifescribe.auth import current_profile, get_membership
from lifescribe.models import (
    Story, Member, Invite, Person, PersonRole, PersonPageBlock, PersonPageTheme,
    Media, ExportJob
)

logger = logging.getLogger(__name__)

functions_bp = Blueprint('functions', __name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'authorization, x-client-info, apikey, content-type',
}

FAMILY_EXPORT_TYPES = ('stories', 'engagement', 'members', 'full')
PERSON_EXPORT_TYPES = ('json', 'pdf')
SHARED_VISIBILITY = ('public', 'family')
PRIVATE_EXPORT_ROLES = ('owner', 'steward')


def _json(payload, status=200):
    response = make_response(jsonify(payload), status)
    response.headers.update(CORS_HEADERS)
    return response


def _attachment(body, content_type, filename):
    response = make_response(body, 200)
    response.headers.update(CORS_HEADERS)
    response.headers['Content-Type'] = content_type
    response.headers['Content-Disposition'] = f'attachment; filename="{filename}"'
    return response


def _preflight():
    response = make_response('', 200)
    response.headers.update(CORS_HEADERS)
    return response


def _parse_datetime(value):
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00')).replace(tzinfo=None)


def _story_export(story, detailed=True):
    data = {
        'id': story.id,
        'title': story.title,
        'content': story.content,
        'occurred_on': story.occurred_on.isoformat() if story.occurred_on else None,
        'tags': story.tag_list,
        'created_at': story.created_at.isoformat() if story.created_at else None,
        'profiles': {
            'full_name': story.author.full_name if story.author else None,
            'email': story.author.email if story.author else None
        }
    }
    if detailed:
        data['is_approx'] = story.is_approx
        data['updated_at'] = story.updated_at.isoformat() if story.updated_at else None
        data['comments'] = [c.to_dict() for c in story.comments]
        data['reactions'] = [r.to_dict() for r in story.reactions]
    return data


def stories_csv(stories):
    """Stories as CSV: Title,Content,Author,Created Date,Tags"""
    buffer = io.StringIO()
    buffer.write('Title,Content,Author,Created Date,Tags\n')
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator='\n')
    for story in stories:
        writer.writerow([
            story.get('title') or '',
            story.get('content') or '',
            (story.get('profiles') or {}).get('full_name') or '',
            story.get('created_at') or '',
            ', '.join(story.get('tags') or [])
        ])
    return buffer.getvalue()


def build_family_export(family_id, export_type, date_range=None, now=None):
    """
    Collect the export payload.

    Returns:
        tuple: (payload dict, filename stem)
    """
    now = now or datetime.utcnow()
    today = now.date().isoformat()
    start = _parse_datetime(date_range.get('start')) if date_range else None
    end = _parse_datetime(date_range.get('end')) if date_range else None

    if export_type == 'stories':
        query = Story.query.filter_by(family_id=family_id)
        if start:
            query = query.filter(Story.created_at >= start)
        if end:
            query = query.filter(Story.created_at <= end)
        stories = [_story_export(s) for s in query.order_by(Story.created_at.desc()).all()]
        payload = {
            'stories': stories,
            'metadata': {
                'total_stories': len(stories),
                'date_range': date_range or 'all time',
                'exported_at': now.isoformat()
            }
        }
    elif export_type == 'engagement':
        payload = engagement_summary(family_id, start, end)
        payload['metadata'] = {
            'date_range': date_range or 'all time',
            'exported_at': now.isoformat()
        }
    elif export_type == 'members':
        members = (Member.query
                   .filter_by(family_id=family_id)
                   .order_by(Member.joined_at.asc())
                   .all())
        payload = {
            'members': [m.to_dict(include_profile=True) for m in members],
            'metadata': {
                'total_members': len(members),
                'admin_count': len([m for m in members if m.role == 'admin']),
                'exported_at': now.isoformat()
            }
        }
    elif export_type == 'full':
        stories = (Story.query
                   .filter_by(family_id=family_id)
                   .order_by(Story.created_at.desc())
                   .all())
        members = Member.query.filter_by(family_id=family_id).all()
        invites = Invite.query.filter_by(family_id=family_id).all()
        payload = {
            'stories': [_story_export(s, detailed=False) for s in stories],
            'members': [m.to_dict(include_profile=True) for m in members],
            'invites': [i.to_dict() for i in invites],
            'metadata': {
                'exported_at': now.isoformat(),
                'total_stories': len(stories),
                'total_members': len(members),
                'total_invites': len(invites)
            }
        }
    else:
        raise ValueError(f'Invalid export type: {export_type}')

    return payload, f'{export_type}-export-{family_id}-{today}'


@functions_bp.route('/export-family-data', methods=['POST', 'OPTIONS'])
def export_family_data():
    """Admin export of family data"""
    if request.method == 'OPTIONS':
        return _preflight()

    try:
        profile = current_profile()
        if profile is None:
            logger.error('Authentication failed for family export')
            return _json({'error': 'Authentication required'}, 401)

        data = request.get_json(silent=True) or {}
        family_id = data.get('familyId')
        export_type = data.get('exportType')
        export_format = data.get('format', 'json')
        date_range = data.get('dateRange')

        member = get_membership(family_id, profile) if family_id is not None else None
        if member is None or member.role != 'admin':
            logger.error('Authorization failed for family export (profile %s, family %s)', profile.id, family_id)
            return _json({'error': 'Admin access required'}, 403)

        if export_type not in FAMILY_EXPORT_TYPES:
            return _json({'error': 'Invalid export type'}, 400)

        logger.info('Exporting %s data for family %s', export_type, family_id)
        payload, filename = build_family_export(family_id, export_type, date_range)

        if export_format == 'csv':
            if export_type == 'stories':
                body = stories_csv(payload['stories'])
            else:
                body = json.dumps(payload, indent=2)
            content_type = 'text/csv'
            filename += '.csv'
        else:
            body = json.dumps(payload, indent=2)
            content_type = 'application/json'
            filename += '.json'

        logger.info('Export completed: %s, %d characters', filename, len(body))
        return _attachment(body, content_type, filename)

    except Exception as exc:
        logger.exception('Export error')
        return _json({'error': 'Export failed', 'details': str(exc)}, 500)


def collect_person_export(person, include_private, export_type, now=None):
    now = now or datetime.utcnow()

    blocks_query = PersonPageBlock.query.filter_by(person_id=person.id)
    if not include_private:
        blocks_query = blocks_query.filter(PersonPageBlock.visibility.in_(SHARED_VISIBILITY))
    blocks = blocks_query.order_by(PersonPageBlock.position.asc()).all()

    story_ids = [b.content_id for b in blocks if b.block_type in ('story', 'timeline') and b.content_id]
    media_ids = [b.content_id for b in blocks if b.block_type in ('gallery', 'hero') and b.content_id]

    stories = []
    if story_ids:
        stories_query = Story.query.filter(Story.id.in_(story_ids))
        if not include_private:
            stories_query = stories_query.filter(Story.visibility.in_(SHARED_VISIBILITY))
        stories = stories_query.all()

    media = []
    if media_ids:
        media_query = Media.query.filter(Media.id.in_(media_ids))
        if not include_private:
            media_query = media_query.filter(Media.visibility.in_(SHARED_VISIBILITY))
        media = media_query.all()

    theme = PersonPageTheme.query.filter_by(person_id=person.id).first()

    return {
        'person': person,
        'blocks': blocks,
        'stories': stories,
        'media': media,
        'theme': theme,
        'exported_at': now,
        'export_type': export_type,
        'included_private': include_private
    }


def serialize_person_export(collected):
    return {
        'person': collected['person'].to_dict(),
        'blocks': [b.to_dict() for b in collected['blocks']],
        'stories': [s.to_dict() for s in collected['stories']],
        'media': [m.to_dict() for m in collected['media']],
        'theme': collected['theme'].to_dict() if collected['theme'] else None,
        'exported_at': collected['exported_at'].isoformat(),
        'export_type': collected['export_type'],
        'included_private': collected['included_private']
    }


def render_minibook(collected):
    """Printable HTML mini-book: cover, up to 10 timeline entries, up to 20 photos"""
    blocks = collected['blocks']
    stories_by_id = {s.id: s for s in collected['stories']}
    media_by_id = {m.id: m for m in collected['media']}

    hero_block = next((b for b in blocks if b.block_type == 'hero'), None)
    hero_media = media_by_id.get(hero_block.content_id) if hero_block else None

    timeline_blocks = [b for b in blocks if b.block_type == 'timeline'][:10]
    timeline = [stories_by_id[b.content_id] for b in timeline_blocks if b.content_id in stories_by_id]

    return render_template(
        'minibook.html',
        person=collected['person'],
        hero_media=hero_media,
        timeline=timeline,
        gallery=[m for m in collected['media'] if m.is_image][:20],
        generated_on=collected['exported_at']
    )


def _finish_job(job, size, metadata):
    job.status = 'completed'
    job.completed_at = datetime.utcnow()
    job.file_size_bytes = size
    job.job_metadata = json.dumps(metadata)
    db.session.commit()


@functions_bp.route('/export-person-data', methods=['POST', 'OPTIONS'])
def export_person_data():
    """Export a person page as JSON or as an HTML mini-book"""
    if request.method == 'OPTIONS':
        return _preflight()

    job = None
    try:
        profile = current_profile()
        if profile is None:
            return _json({'error': 'Unauthorized'}, 401)

        data = request.get_json(silent=True) or {}
        person_id = data.get('personId')
        export_type = data.get('exportType', 'json')
        include_private = bool(data.get('includePrivate', False))

        if export_type not in PERSON_EXPORT_TYPES:
            return _json({'error': 'Invalid export type'}, 400)

        person_role = PersonRole.query.filter(
            PersonRole.person_id == person_id,
            PersonRole.profile_id == profile.id,
            PersonRole.revoked_at.is_(None)
        ).first()
        if person_role is None:
            return _json({'error': 'No permission to export this person'}, 403)

        if include_private and person_role.role not in PRIVATE_EXPORT_ROLES:
            return _json({'error': 'Only owners and stewards can export private items'}, 403)

        person = db.session.get(Person, person_id)
        if person is None:
            return _json({'error': 'Person not found'}, 404)

        job = ExportJob(
            person_id=person.id,
            family_id=person.family_id,
            created_by=profile.id,
            export_type=export_type,
            include_private=include_private,
            status='processing'
        )
        db.session.add(job)
        db.session.commit()

        collected = collect_person_export(person, include_private, export_type)
        export_data = serialize_person_export(collected)
        stamp = int(time.time() * 1000)

        if export_type == 'json':
            body = json.dumps(export_data, indent=2)
            filename = f'{person.given_name}_{person.surname or ""}_export_{stamp}.json'
            _finish_job(job, len(body.encode('utf-8')),
                        {'filename': filename, 'items_count': len(collected['blocks'])})
            return _attachment(body, 'application/json', filename)

        html = render_minibook(collected)
        filename = f'{person.given_name}_{person.surname or ""}_minibook_{stamp}.html'
        _finish_job(job, len(html.encode('utf-8')), {
            'filename': filename,
            'items_count': len(collected['blocks']),
            'note': 'HTML generated for client-side PDF conversion'
        })
        return _json({'html': html, 'exportData': export_data, 'jobId': job.id})

    except Exception as exc:
        logger.exception('Export error')
        db.session.rollback()
        if job is not None and job.id is not None:
            job.status = 'failed'
            db.session.commit()
        return _json({'error': 'Export failed', 'details': str(exc)}, 500)
