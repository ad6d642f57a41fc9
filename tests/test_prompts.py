import random
from datetime import datetime, date, timedelta
from types import SimpleNamespace

import pytest

from lifescribe.models import PromptHistory, UserStreak
from lifescribe.prompts import (
    PROMPTS, preferred_themes, personalization_level, progress, select_next_prompt,
    update_streak, mark_completed, prompt_state, shuffle_prompt
)

NOW = datetime(2024, 5, 1, 10, 0)


def entry(prompt_id, days_ago=1, completed=False):
    return SimpleNamespace(prompt_id=prompt_id, used_at=NOW - timedelta(days=days_ago), completed=completed)


def test_preferred_themes_need_three_completions():
    history = [entry('childhood-toy', completed=True), entry('family-recipe', completed=True)]
    assert preferred_themes(history) == []

    history += [entry('childhood-toy', completed=True), entry('life-lesson', completed=True)]
    assert preferred_themes(history) == ['childhood', 'family', 'wisdom']


def test_progress_and_level():
    assert progress(0) == 0
    assert progress(7) == 0
    assert progress(3) == pytest.approx(300 / 7)
    assert personalization_level(7) == 2
    assert personalization_level(40) == 5


def test_recently_used_prompts_are_skipped():
    recent = [entry(p['id']) for p in PROMPTS if p['id'] != 'holiday-tradition']

    prompt = select_next_prompt(recent, 0, [], NOW, random.Random(1))

    assert prompt['id'] == 'holiday-tradition'


def test_all_recent_falls_back_and_avoids_last_theme():
    history = [entry('childhood-toy')] + [entry(p['id'], days_ago=2) for p in PROMPTS[1:]]

    for seed in range(5):
        prompt = select_next_prompt(history, 0, [], NOW, random.Random(seed))
        assert prompt['id'] == 'holiday-tradition'


def test_newcomers_only_get_easy_prompts():
    for seed in range(10):
        prompt = select_next_prompt([], 0, [], NOW, random.Random(seed))
        assert prompt['difficulty'] == 'easy'


def test_personalized_users_get_preferred_themes():
    history = [entry('childhood-toy', days_ago=30, completed=True)]
    history += [entry('family-recipe', days_ago=40, completed=True) for _ in range(9)]

    prompt = select_next_prompt(history, 3, ['love'], NOW, random.Random(0))

    assert prompt['id'] == 'love-story'


def test_update_streak():
    streak = UserStreak(current_streak=0, longest_streak=0, total_completed=0)
    day = date(2024, 5, 1)

    update_streak(streak, day)
    update_streak(streak, day)
    assert (streak.current_streak, streak.total_completed) == (1, 2)

    update_streak(streak, day + timedelta(days=1))
    assert streak.current_streak == 2

    update_streak(streak, day + timedelta(days=3))
    assert streak.current_streak == 1
    assert streak.longest_streak == 2
    assert streak.total_completed == 4


def test_mark_completed_records_history(app, make_profile):
    profile = make_profile()

    mark_completed(profile.id, 'family-recipe', 420, ['cooking'], now=NOW)
    result = mark_completed(profile.id, 'childhood-toy', 100, now=NOW + timedelta(days=1))

    assert result['streak'] == 2
    assert result['progress'] == pytest.approx(200 / 7)
    rows = PromptHistory.query.filter_by(profile_id=profile.id).all()
    assert len(rows) == 2
    assert all(r.completed and r.action == 'completed' for r in rows)

    with pytest.raises(KeyError):
        mark_completed(profile.id, 'no-such-prompt')


def test_state_and_shuffle(app, make_profile):
    profile = make_profile()

    state = prompt_state(profile.id, NOW, random.Random(3))
    assert state['streak'] == 0
    assert state['personalization_level'] == 0
    assert state['current_prompt']['difficulty'] == 'easy'
    assert len(state['available_prompts']) == len(PROMPTS)

    shown = shuffle_prompt(profile.id, NOW, random.Random(3))
    history = PromptHistory.query.filter_by(profile_id=profile.id).one()
    assert history.prompt_id == shown['id']
    assert history.action == 'shuffled'
    assert history.completed is False
