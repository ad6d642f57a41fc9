from datetime import datetime, date, timedelta

import pytest

from lifescribe import db
from lifescribe.digest import (
    DigestError, next_birthday, week_start, digest_content, digest_preview,
    send_digest, send_due_digests
)
from lifescribe.models import (
    Story, Media, Comment, Person, DigestSettings, DigestSendLog
)

NOW = datetime(2024, 3, 20, 9, 0)  # a Wednesday


def test_next_birthday_handles_leap_days():
    assert next_birthday(date(1990, 6, 1), date(2024, 3, 20)) == date(2024, 6, 1)
    assert next_birthday(date(1990, 1, 5), date(2024, 3, 20)) == date(2025, 1, 5)
    assert next_birthday(date(2000, 2, 29), date(2023, 2, 1)) == date(2023, 2, 28)
    assert next_birthday(date(2000, 2, 29), date(2023, 3, 1)) == date(2024, 2, 29)


def test_week_starts_on_sunday():
    assert week_start(date(2024, 3, 20)) == date(2024, 3, 17)
    assert week_start(date(2024, 3, 17)) == date(2024, 3, 17)
    assert week_start(date(2024, 3, 23)) == date(2024, 3, 17)


def test_digest_content(make_profile, make_family):
    owner = make_profile()
    family = make_family(owner)
    recent = NOW - timedelta(days=2)

    story = Story(family_id=family.id, profile_id=owner.id, title='Beach day', content='Sun',
                  created_at=recent)
    db.session.add_all([
        story,
        Story(family_id=family.id, profile_id=owner.id, title='Unfinished', status='draft', created_at=recent),
        Story(family_id=family.id, profile_id=owner.id, title='Last month', created_at=NOW - timedelta(days=30)),
        Media(family_id=family.id, file_path='1/a.jpg', mime_type='image/jpeg', created_at=recent),
        Media(family_id=family.id, file_path='1/b.mp3', mime_type='audio/mpeg', created_at=recent),
        Person(family_id=family.id, given_name='Nana', birth_date=date(1940, 3, 24)),
        Person(family_id=family.id, given_name='Grandpa', birth_date=date(1938, 3, 22), is_living=False),
        Person(family_id=family.id, given_name='Cousin', birth_date=date(2001, 8, 1)),
    ])
    db.session.flush()
    db.session.add(Comment(story_id=story.id, family_id=family.id, profile_id=owner.id,
                           content='Great', created_at=recent))
    db.session.commit()

    content = digest_content(family.id, now=NOW)

    assert content['counts'] == {'stories': 1, 'photos': 1, 'comments': 1, 'birthdays': 1}
    assert [s.title for s in content['stories']] == ['Beach day']
    assert content['birthdays'][0]['person'].given_name == 'Nana'
    assert content['birthdays'][0]['date'] == date(2024, 3, 24)


def test_preview_renders_html(make_profile, make_family):
    family = make_family(make_profile(), name='Rivera')

    preview = digest_preview(family.id)

    assert 'Rivera Weekly Digest' in preview['html']
    assert preview['counts']['stories'] == 0


def test_send_digest(make_profile, make_family, add_member, mailer):
    owner = make_profile(email='owner@example.com')
    family = make_family(owner, name='Rivera')
    add_member(family, make_profile(email='cousin@example.com'))
    add_member(family, make_profile(email='bounce@example.com'))
    mailer.fail_for.add('bounce@example.com')
    db.session.add(Story(family_id=family.id, profile_id=owner.id, title='New story'))
    db.session.commit()

    result = send_digest(family.id, now=NOW)

    assert result['success'] is True
    assert result['recipients_sent'] == 2
    assert result['total_recipients'] == 3
    assert result['failed_sends'] == ['bounce@example.com']
    assert mailer.sent[0]['subject'] == 'Rivera Weekly Digest'

    log = DigestSendLog.query.filter_by(family_id=family.id).one()
    assert log.digest_week == date(2024, 3, 17)
    assert log.recipient_count == 2
    assert DigestSettings.query.filter_by(family_id=family.id).one().last_sent_at == NOW


def test_resend_in_same_week_updates_log(make_profile, make_family):
    owner = make_profile()
    family = make_family(owner)

    send_digest(family.id, now=NOW)
    send_digest(family.id, 'forced', sent_by=owner.id, now=NOW + timedelta(days=1))

    log = DigestSendLog.query.filter_by(family_id=family.id).one()
    assert log.send_type == 'forced'
    settings = DigestSettings.query.filter_by(family_id=family.id).one()
    assert settings.forced_send_by == owner.id
    assert settings.last_forced_send_at == NOW + timedelta(days=1)


def test_send_digest_errors(make_profile, make_family):
    owner = make_profile()
    family = make_family(owner, digest_enabled=False)

    with pytest.raises(DigestError) as exc:
        send_digest(99)
    assert exc.value.status == 404

    with pytest.raises(DigestError, match='disabled'):
        send_digest(family.id)

    settings = DigestSettings.query.filter_by(family_id=family.id).one()
    settings.enabled = True
    settings.is_paused = True
    db.session.commit()

    with pytest.raises(DigestError, match='paused'):
        send_digest(family.id)
    assert send_digest(family.id, 'forced', sent_by=owner.id)['recipients_sent'] == 1


def test_send_due_digests(make_profile, make_family):
    owner = make_profile()
    due = make_family(owner, name='Due')
    other_day = make_family(owner, name='Other day')
    settings = DigestSettings.query.filter_by(family_id=other_day.id).one()
    settings.delivery_day = 3
    db.session.commit()

    sunday = datetime(2024, 3, 17, 8, 0)
    results = send_due_digests(sunday)

    assert list(results) == [due.id]
    assert send_due_digests(sunday) == {}


def test_send_endpoint(client, login, make_profile, make_family, add_member):
    owner = make_profile()
    family = make_family(owner)
    member = make_profile()
    add_member(family, member)

    login(member)
    assert client.post(f'/api/families/{family.id}/digest/send').status_code == 403

    login(owner)
    client.put(f'/api/families/{family.id}/digest/settings', json={'is_paused': True})
    response = client.post(f'/api/families/{family.id}/digest/send')
    assert response.status_code == 400
    assert 'paused' in response.get_json()['error']

    response = client.post(f'/api/families/{family.id}/digest/send', json={'force': True})
    assert response.status_code == 200
    assert response.get_json()['recipients_sent'] == 2
