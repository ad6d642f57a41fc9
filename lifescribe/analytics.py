"""
Activation funnel and engagement aggregation for the admin dashboards.

All functions read from the database and return plain dicts ready for
jsonify(). ``now`` is injectable so reports are reproducible in tests.
"""

import logging
import math
from collections import OrderedDict
from datetime import datetime, timedelta

from lifescribe.models import (
    Family, Story, Invite, LifeEvent, DigestSettings, DigestSendLog,
    Comment, Reaction
)

logger = logging.getLogger(__name__)

TIME_RANGES = {
    '7d': timedelta(days=7),
    '30d': timedelta(days=30),
    '90d': timedelta(days=90),
}

FUNNEL_STAGES = [
    ('signup', 'Signed Up'),
    ('first_memory', 'First Memory'),
    ('invite_sent', 'Invite Sent'),
    ('invite_accepted', 'Invite Accepted'),
    ('digest_sent', 'Digest Sent'),
]


def _round_half_up(value, digits=0):
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def percentage(part, whole):
    if not whole:
        return 0
    return int(_round_half_up(part / whole * 100))


def median(values):
    ordered = sorted(values)
    n = len(ordered)
    if n == 0:
        return 0
    if n % 2 == 0:
        return (ordered[n // 2 - 1] + ordered[n // 2]) / 2
    return ordered[n // 2]


def time_range_start(time_range, now=None):
    """Start of a dashboard time range; None for 'all'"""
    now = now or datetime.utcnow()
    if time_range in (None, 'all'):
        return None
    if time_range not in TIME_RANGES:
        raise ValueError(f'Unknown time range: {time_range}')
    return now - TIME_RANGES[time_range]


def iso_week_key(dt):
    year, week, _ = dt.isocalendar()
    return f'{year}-W{week:02d}'


def families_created_since(start):
    query = Family.query
    if start is not None:
        query = query.filter(Family.created_at >= start)
    return query.order_by(Family.created_at.desc()).all()


def _first_story_at(family_id):
    story = (Story.query
             .filter_by(family_id=family_id)
             .order_by(Story.created_at.asc())
             .first())
    return story.created_at if story else None


def _digest_enabled(family_id):
    settings = DigestSettings.query.filter_by(family_id=family_id).first()
    return bool(settings and settings.enabled)


def activation_kpis(families, now=None):
    """
    Time-to-value and activation percentages.

    TTV is the delay between family creation and its first story. A family
    is Day-3 activated when a story, an accepted invite and a life event all
    exist within three days of creation.
    """
    now = now or datetime.utcnow()
    ttv_hours = []
    day3_completed = 0
    day7_eligible = 0
    day7_enabled = 0

    for family in families:
        created_at = family.created_at
        three_days_after = created_at + timedelta(days=3)
        seven_days_after = created_at + timedelta(days=7)

        first_story_at = _first_story_at(family.id)
        if first_story_at is not None:
            ttv_hours.append((first_story_at - created_at).total_seconds() / 3600)

        has_memory = first_story_at is not None and first_story_at <= three_days_after
        accepted_invite = (Invite.query
                           .filter(Invite.family_id == family.id,
                                   Invite.accepted_at.isnot(None),
                                   Invite.accepted_at <= three_days_after)
                           .first())
        important_date = (LifeEvent.query
                          .filter(LifeEvent.family_id == family.id,
                                  LifeEvent.created_at <= three_days_after)
                          .first())
        if has_memory and accepted_invite and important_date:
            day3_completed += 1

        if now >= seven_days_after:
            day7_eligible += 1
            if _digest_enabled(family.id):
                day7_enabled += 1

    return {
        'median_ttv': {
            'hours': _round_half_up(median(ttv_hours), 1),
            'samples': len(ttv_hours)
        },
        'day3_activation': {
            'percentage': percentage(day3_completed, len(families)),
            'total': len(families),
            'completed': day3_completed
        },
        'day7_digest_enabled': {
            'percentage': percentage(day7_enabled, day7_eligible),
            'total': day7_eligible,
            'enabled': day7_enabled
        }
    }


def _stuck_entry(family, now, missing_step):
    creator = family.creator
    return {
        'id': family.id,
        'name': family.name,
        'created_at': family.created_at.isoformat(),
        'days_since_signup': (now - family.created_at).days,
        'email': creator.email if creator else '',
        'missing_steps': [missing_step]
    }


def activation_funnel(families, now=None):
    """
    Signup -> first memory -> invite sent -> invite accepted -> digest sent.

    Each family advances as far as it can; the families that stop at a stage
    are listed under it together with the next missing step.
    """
    now = now or datetime.utcnow()
    counts = {stage_id: 0 for stage_id, _ in FUNNEL_STAGES}
    stuck = {stage_id: [] for stage_id, _ in FUNNEL_STAGES}

    for family in families:
        counts['signup'] += 1

        if Story.query.filter_by(family_id=family.id).first() is None:
            stuck['signup'].append(_stuck_entry(family, now, 'No first memory'))
            continue
        counts['first_memory'] += 1

        if Invite.query.filter_by(family_id=family.id).first() is None:
            stuck['first_memory'].append(_stuck_entry(family, now, 'No invite sent'))
            continue
        counts['invite_sent'] += 1

        accepted = (Invite.query
                    .filter(Invite.family_id == family.id, Invite.accepted_at.isnot(None))
                    .first())
        if accepted is None:
            stuck['invite_sent'].append(_stuck_entry(family, now, 'Invite not accepted'))
            continue
        counts['invite_accepted'] += 1

        if DigestSendLog.query.filter_by(family_id=family.id).first() is None:
            stuck['invite_accepted'].append(_stuck_entry(family, now, 'Digest not sent'))
            continue
        counts['digest_sent'] += 1

    signups = counts['signup']
    stages = []
    for stage_id, name in FUNNEL_STAGES:
        stages.append({
            'id': stage_id,
            'name': name,
            'count': counts[stage_id],
            'percentage': 100 if stage_id == 'signup' else percentage(counts[stage_id], signups),
            'stuck_families': stuck[stage_id]
        })

    return {'total_signups': signups, 'stages': stages}


def cohort_data(families, now=None):
    """Weekly signup cohorts with their own KPIs, oldest first"""
    cohorts = {}
    for family in families:
        cohorts.setdefault(iso_week_key(family.created_at), []).append(family)

    result = []
    for period in sorted(cohorts):
        members = cohorts[period]
        kpis = activation_kpis(members, now)
        result.append({
            'period': period,
            'signups': len(members),
            'median_ttv': kpis['median_ttv']['hours'],
            'day3_activation': kpis['day3_activation']['percentage'],
            'day7_digest': kpis['day7_digest_enabled']['percentage']
        })
    return result


def activation_report(time_range='30d', now=None):
    now = now or datetime.utcnow()
    families = families_created_since(time_range_start(time_range, now))
    logger.info('Activation report over %s: %d families', time_range, len(families))
    return {
        'time_range': time_range,
        'kpis': activation_kpis(families, now),
        'funnel': activation_funnel(families, now),
        'cohorts': cohort_data(families, now)
    }


def engagement_summary(family_id, start=None, end=None):
    """
    Story / comment / reaction totals, monthly trend and top contributors.
    """
    start = start or datetime(2020, 1, 1)
    end = end or datetime.utcnow()

    stories = (Story.query
               .filter(Story.family_id == family_id,
                       Story.created_at >= start, Story.created_at <= end)
               .all())
    comments = (Comment.query
                .filter(Comment.family_id == family_id,
                        Comment.created_at >= start, Comment.created_at <= end)
                .all())
    reactions = (Reaction.query
                 .filter(Reaction.family_id == family_id,
                         Reaction.created_at >= start, Reaction.created_at <= end)
                 .all())

    monthly = {}
    for kind, rows in (('stories', stories), ('comments', comments), ('reactions', reactions)):
        for row in rows:
            month = row.created_at.strftime('%Y-%m')
            bucket = monthly.setdefault(month, {'stories': 0, 'comments': 0, 'reactions': 0})
            bucket[kind] += 1

    contributors = OrderedDict()
    for story in stories:
        author = story.author.full_name if story.author and story.author.full_name else 'Unknown'
        contributors[author] = contributors.get(author, 0) + 1
    top_contributors = sorted(contributors.items(), key=lambda item: item[1], reverse=True)[:10]

    if stories:
        engagement_rate = f'{(len(comments) + len(reactions)) / len(stories):.2f}'
    else:
        engagement_rate = '0'

    return {
        'summary': {
            'total_stories': len(stories),
            'total_comments': len(comments),
            'total_reactions': len(reactions),
            'engagement_rate': engagement_rate
        },
        'monthly_trends': [dict(month=month, **monthly[month]) for month in sorted(monthly)],
        'top_contributors': [[name, count] for name, count in top_contributors]
    }
