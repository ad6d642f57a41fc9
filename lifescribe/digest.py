"""
Weekly family digest: collect the week's activity, render it and e-mail it.
"""

import json
import logging
from datetime import datetime, date, timedelta

from flask import current_app, render_template

from lifescribe import db
from lifescribe.mailer import get_mailer
from lifescribe.models import (
    Family, Member, Story, Media, Comment, Person, DigestSettings, DigestSendLog
)

logger = logging.getLogger(__name__)

DIGEST_WINDOW = timedelta(days=7)


class DigestError(Exception):
    """Digest cannot be sent; ``status`` is the HTTP code to answer with"""

    def __init__(self, message, status=400):
        super().__init__(message)
        self.message = message
        self.status = status


def next_birthday(birth_date, today):
    """The next occurrence of a birthday on or after today (Feb 29 falls back to Feb 28)"""
    for year in (today.year, today.year + 1):
        try:
            candidate = birth_date.replace(year=year)
        except ValueError:
            candidate = date(year, 2, 28)
        if candidate >= today:
            return candidate
    return None


def upcoming_birthdays(family_id, today, days=7):
    people = (Person.query
              .filter(Person.family_id == family_id,
                      Person.is_living.is_(True),
                      Person.birth_date.isnot(None))
              .all())
    horizon = today + timedelta(days=days)
    result = []
    for person in people:
        upcoming = next_birthday(person.birth_date, today)
        if upcoming and upcoming <= horizon:
            result.append({'person': person, 'date': upcoming})
    result.sort(key=lambda item: item['date'])
    return result


def week_start(today):
    """Sunday that starts the digest week containing ``today``"""
    return today - timedelta(days=(today.weekday() + 1) % 7)


def digest_content(family_id, since=None, now=None):
    now = now or datetime.utcnow()
    since = since or now - DIGEST_WINDOW

    stories_query = Story.query.filter(Story.family_id == family_id,
                                       Story.status == 'published',
                                       Story.created_at >= since)
    photos_query = Media.query.filter(Media.family_id == family_id,
                                      Media.mime_type.like('image/%'),
                                      Media.created_at >= since)
    comments_count = Comment.query.filter(Comment.family_id == family_id,
                                          Comment.created_at >= since).count()
    birthdays = upcoming_birthdays(family_id, now.date())

    return {
        'counts': {
            'stories': stories_query.count(),
            'photos': photos_query.count(),
            'comments': comments_count,
            'birthdays': len(birthdays)
        },
        'stories': stories_query.order_by(Story.created_at.desc()).limit(5).all(),
        'photos': photos_query.order_by(Media.created_at.desc()).limit(6).all(),
        'birthdays': birthdays,
        'since': since
    }


def render_digest(family, content):
    return render_template(
        'digest_email.html',
        family_name=family.name,
        counts=content['counts'],
        stories=content['stories'],
        photos=content['photos'],
        birthdays=content['birthdays'],
        week_start_date=content['since'].date()
    )


def digest_preview(family_id, now=None):
    family = db.session.get(Family, family_id)
    if family is None:
        raise DigestError('Family not found', 404)
    content = digest_content(family_id, now=now)
    return {
        'counts': content['counts'],
        'stories': [{'id': s.id, 'title': s.title, 'excerpt': s.excerpt} for s in content['stories']],
        'html': render_digest(family, content)
    }


def digest_recipients(family_id):
    members = Member.query.filter_by(family_id=family_id).all()
    return [
        {'email': m.profile.email, 'name': m.profile.full_name or 'Family Member'}
        for m in members
        if m.profile and m.profile.email
    ]


def send_digest(family_id, send_type='scheduled', sent_by=None, now=None):
    """
    Send the weekly digest to every member with an e-mail address.

    Raises:
        DigestError: family or settings missing, digest disabled, paused
            (unless forced) or nobody to send to
    """
    now = now or datetime.utcnow()
    logger.info('Starting digest send for family %s, type: %s', family_id, send_type)

    family = db.session.get(Family, family_id)
    if family is None:
        raise DigestError('Family not found', 404)

    settings = DigestSettings.query.filter_by(family_id=family_id).first()
    if settings is None:
        raise DigestError('Digest settings not found', 404)
    if not settings.enabled:
        raise DigestError('Digest is disabled for this family')
    if settings.is_paused and send_type != 'forced':
        raise DigestError('Digest is paused for this family')

    recipients = digest_recipients(family_id)
    if not recipients:
        raise DigestError('No recipients found')

    content = digest_content(family_id, now=now)
    html = render_digest(family, content)
    mailer = get_mailer()
    sender = current_app.config['DIGEST_FROM_EMAIL']
    subject = f'{family.name} Weekly Digest'

    results = [mailer.send(sender, r['email'], subject, html) for r in recipients]
    success_count = len([r for r in results if r['success']])

    digest_week = week_start(now.date())
    log = DigestSendLog.query.filter_by(family_id=family_id, digest_week=digest_week).first()
    if log is None:
        log = DigestSendLog(family_id=family_id, digest_week=digest_week)
        db.session.add(log)
    log.send_type = send_type
    log.sent_by = sent_by
    log.recipient_count = success_count
    log.content_summary = json.dumps(content['counts'])
    log.sent_at = now

    settings.last_sent_at = now
    if send_type == 'forced':
        settings.last_forced_send_at = now
        settings.forced_send_by = sent_by

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info('Digest sent to %d/%d recipients', success_count, len(recipients))
    return {
        'success': True,
        'recipients_sent': success_count,
        'total_recipients': len(recipients),
        'failed_sends': [r['email'] for r in results if not r['success']]
    }


def send_due_digests(now=None):
    """
    Scheduled run: send to every enabled, unpaused family whose delivery day
    is today and that has no digest logged for this week yet.
    """
    now = now or datetime.utcnow()
    today = now.date()
    weekday = (today.weekday() + 1) % 7  # 0 = Sunday
    digest_week = week_start(today)

    due = (DigestSettings.query
           .filter(DigestSettings.enabled.is_(True),
                   DigestSettings.delivery_day == weekday)
           .all())

    results = {}
    for settings in due:
        if settings.is_paused:
            continue
        already_sent = DigestSendLog.query.filter_by(family_id=settings.family_id,
                                                     digest_week=digest_week).first()
        if already_sent:
            continue
        try:
            results[settings.family_id] = send_digest(settings.family_id, now=now)
        except DigestError as exc:
            logger.warning('Digest for family %s skipped: %s', settings.family_id, exc.message)
            results[settings.family_id] = {'success': False, 'error': exc.message}
    return results
