from datetime import datetime, timedelta

import pytest

from lifescribe import db
from lifescribe.analytics import (
    median, percentage, time_range_start, iso_week_key, activation_kpis,
    activation_funnel, cohort_data, activation_report, engagement_summary
)
from lifescribe.models import (
    Story, Invite, LifeEvent, DigestSettings, DigestSendLog, Comment, Reaction
)

NOW = datetime(2024, 3, 20, 12, 0)


def add_story(family, profile, created_at, title='Story'):
    story = Story(family_id=family.id, profile_id=profile.id, title=title, created_at=created_at)
    db.session.add(story)
    db.session.commit()
    return story


def add_accepted_invite(family, profile, accepted_at):
    db.session.add(Invite(family_id=family.id, email='guest@example.com', invited_by=profile.id,
                          status='accepted', created_at=accepted_at, accepted_at=accepted_at))
    db.session.commit()


def add_life_event(family, created_at):
    db.session.add(LifeEvent(family_id=family.id, title='Wedding anniversary', created_at=created_at))
    db.session.commit()


def test_median_and_percentage():
    assert median([]) == 0
    assert median([5, 1, 3]) == 3
    assert median([4, 1, 3, 2]) == 2.5
    assert percentage(1, 0) == 0
    assert percentage(1, 8) == 13  # 12.5 rounds half up
    assert percentage(2, 3) == 67


def test_time_range_start():
    assert time_range_start('all', NOW) is None
    assert time_range_start('7d', NOW) == NOW - timedelta(days=7)
    with pytest.raises(ValueError):
        time_range_start('1y', NOW)


def test_iso_week_key_uses_iso_year():
    assert iso_week_key(datetime(2024, 3, 20)) == '2024-W12'
    assert iso_week_key(datetime(2021, 1, 1)) == '2020-W53'


def test_activation_kpis(make_profile, make_family):
    owner = make_profile()
    activated = make_family(owner, 'Activated', created_at=NOW - timedelta(days=10))
    add_story(activated, owner, activated.created_at + timedelta(hours=2))
    add_accepted_invite(activated, owner, activated.created_at + timedelta(days=1))
    add_life_event(activated, activated.created_at + timedelta(days=2))

    slow = make_family(owner, 'Slow', created_at=NOW - timedelta(days=8), digest_enabled=False)
    add_story(slow, owner, slow.created_at + timedelta(hours=5))

    fresh = make_family(owner, 'Fresh', created_at=NOW - timedelta(days=1))

    kpis = activation_kpis([activated, slow, fresh], NOW)

    assert kpis['median_ttv'] == {'hours': 3.5, 'samples': 2}
    assert kpis['day3_activation'] == {'percentage': 33, 'total': 3, 'completed': 1}
    # only the two families older than a week are eligible
    assert kpis['day7_digest_enabled'] == {'percentage': 50, 'total': 2, 'enabled': 1}


def test_late_memory_does_not_activate(make_profile, make_family):
    owner = make_profile()
    family = make_family(owner, created_at=NOW - timedelta(days=10))
    add_story(family, owner, family.created_at + timedelta(days=4))
    add_accepted_invite(family, owner, family.created_at + timedelta(days=1))
    add_life_event(family, family.created_at + timedelta(days=1))

    kpis = activation_kpis([family], NOW)

    assert kpis['day3_activation']['completed'] == 0
    assert kpis['median_ttv']['hours'] == 96.0


def test_activation_funnel(make_profile, make_family):
    owner = make_profile(email='owner@example.com')
    empty = make_family(owner, 'Empty', created_at=NOW - timedelta(days=3))

    invited = make_family(owner, 'Invited', created_at=NOW - timedelta(days=5))
    add_story(invited, owner, NOW - timedelta(days=4))
    db.session.add(Invite(family_id=invited.id, email='x@example.com', invited_by=owner.id))
    db.session.commit()

    complete = make_family(owner, 'Complete', created_at=NOW - timedelta(days=9))
    add_story(complete, owner, NOW - timedelta(days=8))
    add_accepted_invite(complete, owner, NOW - timedelta(days=7))
    db.session.add(DigestSendLog(family_id=complete.id, digest_week=(NOW - timedelta(days=3)).date()))
    db.session.commit()

    funnel = activation_funnel([empty, invited, complete], NOW)

    assert funnel['total_signups'] == 3
    counts = {s['id']: s['count'] for s in funnel['stages']}
    assert counts == {'signup': 3, 'first_memory': 2, 'invite_sent': 2,
                      'invite_accepted': 1, 'digest_sent': 1}
    stages = {s['id']: s for s in funnel['stages']}
    assert stages['signup']['percentage'] == 100
    assert stages['first_memory']['percentage'] == 67

    stuck = stages['signup']['stuck_families']
    assert [f['name'] for f in stuck] == ['Empty']
    assert stuck[0]['missing_steps'] == ['No first memory']
    assert stuck[0]['email'] == 'owner@example.com'
    assert stuck[0]['days_since_signup'] == 3
    assert [f['name'] for f in stages['invite_sent']['stuck_families']] == ['Invited']


def test_cohorts_are_weekly_and_sorted(make_profile, make_family):
    owner = make_profile()
    later = make_family(owner, 'Later', created_at=datetime(2024, 3, 13, 9))
    earlier = make_family(owner, 'Earlier', created_at=datetime(2024, 3, 5, 9))
    same_week = make_family(owner, 'Same week', created_at=datetime(2024, 3, 7, 9))

    cohorts = cohort_data([later, earlier, same_week], NOW)

    assert [c['period'] for c in cohorts] == ['2024-W10', '2024-W11']
    assert [c['signups'] for c in cohorts] == [2, 1]


def test_activation_report_filters_by_range(make_profile, make_family):
    owner = make_profile()
    make_family(owner, 'Recent', created_at=NOW - timedelta(days=2))
    make_family(owner, 'Old', created_at=NOW - timedelta(days=60))

    report = activation_report('30d', NOW)

    assert report['time_range'] == '30d'
    assert report['funnel']['total_signups'] == 1
    assert activation_report('all', NOW)['funnel']['total_signups'] == 2


def test_engagement_summary(make_profile, make_family):
    alice = make_profile(full_name='Alice')
    bob = make_profile(full_name='Bob')
    family = make_family(alice)

    s1 = add_story(family, alice, datetime(2024, 1, 10))
    add_story(family, alice, datetime(2024, 2, 3))
    add_story(family, bob, datetime(2024, 2, 4))
    db.session.add_all([
        Comment(story_id=s1.id, family_id=family.id, profile_id=bob.id, content='Lovely',
                created_at=datetime(2024, 1, 11)),
        Reaction(story_id=s1.id, family_id=family.id, profile_id=bob.id, reaction_type='heart',
                 created_at=datetime(2024, 2, 1)),
        Reaction(story_id=s1.id, family_id=family.id, profile_id=alice.id, reaction_type='heart',
                 created_at=datetime(2024, 2, 2)),
    ])
    db.session.commit()

    result = engagement_summary(family.id, datetime(2024, 1, 1), datetime(2024, 12, 31))

    assert result['summary'] == {
        'total_stories': 3,
        'total_comments': 1,
        'total_reactions': 2,
        'engagement_rate': '1.00'
    }
    assert result['monthly_trends'] == [
        {'month': '2024-01', 'stories': 1, 'comments': 1, 'reactions': 0},
        {'month': '2024-02', 'stories': 2, 'comments': 0, 'reactions': 2},
    ]
    assert result['top_contributors'] == [['Alice', 2], ['Bob', 1]]


def test_engagement_rate_without_stories(make_profile, make_family):
    family = make_family(make_profile())

    assert engagement_summary(family.id)['summary']['engagement_rate'] == '0'
