"""
Story prompt catalog and sequencing.
"""

import random
from datetime import datetime, timedelta

from lifescribe import db
from lifescribe.models import PromptHistory, UserStreak

DIFFICULTIES = ['easy', 'medium', 'deep']
RECENT_WINDOW = timedelta(days=14)

PROMPTS = [
    {
        'id': 'childhood-toy',
        'title': 'Your favorite childhood toy',
        'description': 'Tell us about a toy that brought you joy as a child',
        'theme': 'childhood',
        'difficulty': 'easy',
        'estimated_time': '2-3 min',
        'examples': [
            'I had this teddy bear named...',
            'My favorite toy was a set of blocks...',
            'I remember playing with my toy car...'
        ]
    },
    {
        'id': 'family-recipe',
        'title': 'A treasured family recipe',
        'description': "Share the story behind a recipe that's been passed down in your family",
        'theme': 'family',
        'difficulty': 'medium',
        'estimated_time': '4-5 min',
        'examples': [
            "My grandmother's secret ingredient was...",
            'Every holiday, we would make...',
            'This recipe has been in our family for...'
        ]
    },
    {
        'id': 'life-lesson',
        'title': 'A lesson that changed everything',
        'description': 'Tell about a moment when you learned something that shaped who you are',
        'theme': 'wisdom',
        'difficulty': 'deep',
        'estimated_time': '5-7 min',
        'examples': [
            'I learned that kindness really does...',
            'My father taught me that...',
            'I discovered that failure is actually...'
        ]
    },
    {
        'id': 'first-adventure',
        'title': 'Your first big adventure',
        'description': 'Describe the first time you ventured somewhere new and exciting',
        'theme': 'adventure',
        'difficulty': 'medium',
        'estimated_time': '3-4 min',
        'examples': [
            'The first time I traveled alone...',
            'I remember my first day at summer camp...',
            'When I finally worked up the courage to...'
        ]
    },
    {
        'id': 'love-story',
        'title': 'How you knew it was love',
        'description': 'Share the moment you realized you were truly in love',
        'theme': 'love',
        'difficulty': 'deep',
        'estimated_time': '4-6 min',
        'examples': [
            'I knew it was love when...',
            'The moment that changed everything was...',
            'Looking back, I realize that...'
        ]
    },
    {
        'id': 'holiday-tradition',
        'title': 'A holiday tradition you treasure',
        'description': 'Tell about a holiday tradition that makes the season special',
        'theme': 'tradition',
        'difficulty': 'easy',
        'estimated_time': '3-4 min',
        'examples': [
            'Every year on Christmas morning...',
            'Our family always celebrates by...',
            'The tradition started when...'
        ]
    },
]

PROMPTS_BY_ID = {p['id']: p for p in PROMPTS}


def preferred_themes(history):
    """Top three themes among completed prompts, once at least three are completed"""
    completed = [h for h in history if h.completed]
    if len(completed) < 3:
        return []

    counts = {}
    for entry in completed:
        prompt = PROMPTS_BY_ID.get(entry.prompt_id)
        if prompt:
            counts[prompt['theme']] = counts.get(prompt['theme'], 0) + 1
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return [theme for theme, _ in ranked[:3]]


def personalization_level(total_completed):
    return min(total_completed // 3, 5)


def progress(total_completed):
    return min((total_completed % 7) * (100 / 7), 100)


def select_next_prompt(history, level, themes, now=None, rng=None):
    """
    Pick the next prompt.

    ``history`` is newest first. Filters are applied in order and each one
    is skipped when it would leave nothing to choose from.
    """
    now = now or datetime.utcnow()
    rng = rng or random

    used_recently = {h.prompt_id for h in history if now - h.used_at < RECENT_WINDOW}
    candidates = [p for p in PROMPTS if p['id'] not in used_recently] or list(PROMPTS)

    if level >= 3 and themes:
        preferred = [p for p in candidates if p['theme'] in themes]
        if preferred:
            candidates = preferred

    if history and len(candidates) > 1:
        last = PROMPTS_BY_ID.get(history[0].prompt_id)
        if last:
            different = [p for p in candidates if p['theme'] != last['theme']]
            if different:
                candidates = different

    user_level = min(len([h for h in history if h.completed]) // 5, 2)
    max_index = user_level
    suitable = [p for p in candidates if DIFFICULTIES.index(p['difficulty']) <= max_index]
    if suitable:
        candidates = suitable

    return rng.choice(candidates)


def load_history(profile_id):
    return (PromptHistory.query
            .filter_by(profile_id=profile_id)
            .order_by(PromptHistory.used_at.desc(), PromptHistory.id.desc())
            .all())


def get_streak(profile_id):
    streak = UserStreak.query.filter_by(profile_id=profile_id).first()
    if streak is None:
        streak = UserStreak(profile_id=profile_id, current_streak=0, longest_streak=0, total_completed=0)
        db.session.add(streak)
    return streak


def prompt_state(profile_id, now=None, rng=None):
    """Current prompt plus streak and personalization data for a profile"""
    history = load_history(profile_id)
    streak = UserStreak.query.filter_by(profile_id=profile_id).first()
    total_completed = streak.total_completed if streak else 0
    level = personalization_level(total_completed)
    themes = preferred_themes(history)

    return {
        'current_prompt': select_next_prompt(history, level, themes, now, rng),
        'available_prompts': PROMPTS,
        'history': [h.to_dict() for h in history],
        'streak': streak.current_streak if streak else 0,
        'progress': progress(total_completed),
        'personalization_level': level,
        'preferred_themes': themes
    }


def shuffle_prompt(profile_id, now=None, rng=None):
    """Choose another prompt and record that it was shown"""
    now = now or datetime.utcnow()
    history = load_history(profile_id)
    streak = UserStreak.query.filter_by(profile_id=profile_id).first()
    level = personalization_level(streak.total_completed if streak else 0)
    prompt = select_next_prompt(history, level, preferred_themes(history), now, rng)

    db.session.add(PromptHistory(
        profile_id=profile_id,
        prompt_id=prompt['id'],
        used_at=now,
        completed=False,
        action='shuffled'
    ))
    db.session.commit()
    return prompt


def update_streak(streak, today):
    """Consecutive-day streak; completing twice on one day counts once for the streak"""
    if streak.last_completed_on == today:
        pass
    elif streak.last_completed_on == today - timedelta(days=1):
        streak.current_streak = (streak.current_streak or 0) + 1
    else:
        streak.current_streak = 1
    streak.last_completed_on = today
    streak.longest_streak = max(streak.longest_streak or 0, streak.current_streak)
    streak.total_completed = (streak.total_completed or 0) + 1
    return streak


def mark_completed(profile_id, prompt_id, response_length=0, topics=None, now=None):
    if prompt_id not in PROMPTS_BY_ID:
        raise KeyError(prompt_id)
    now = now or datetime.utcnow()

    db.session.add(PromptHistory(
        profile_id=profile_id,
        prompt_id=prompt_id,
        used_at=now,
        completed=True,
        action='completed',
        response_length=response_length,
        response_topics=','.join(topics or [])
    ))
    streak = update_streak(get_streak(profile_id), now.date())
    db.session.commit()

    return {
        'streak': streak.current_streak,
        'progress': progress(streak.total_completed),
        'personalization_level': personalization_level(streak.total_completed)
    }
