"""Guess parsing and evaluation. Pure functions, no app context needed."""

import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Mapping, Optional

RESULT_MISS = 'miss'
RESULT_ARTIST = 'artist'
RESULT_SOLVED = 'solved'
RESULT_SKIP = 'skip'
ROUND_RESULTS = (RESULT_MISS, RESULT_ARTIST, RESULT_SOLVED, RESULT_SKIP)

_DASH_SPLIT = re.compile(r'\s*[-–—]\s*')
_BY_SPLIT = re.compile(r'^(.*)\s+by\s+(.*)$', re.IGNORECASE)
_NON_WORD = re.compile(r'[^\w\s]')
_WHITESPACE = re.compile(r'\s+')


@dataclass(frozen=True)
class GuessInput:
    title: str = ''
    artist: str = ''


@dataclass(frozen=True)
class GuessEvaluation:
    title_match: bool
    artist_match: bool
    result: str

    @property
    def solved(self) -> bool:
        return self.result == RESULT_SOLVED


def normalize_song_text(value: Any) -> str:
    text = unicodedata.normalize('NFKD', str(value or '').lower())
    text = ''.join(ch for ch in text if not unicodedata.combining(ch))
    text = _NON_WORD.sub(' ', text).replace('_', ' ')
    return _WHITESPACE.sub(' ', text).strip()


def _field(payload: Mapping, key: str) -> str:
    value = payload.get(key)
    return value.strip() if isinstance(value, str) else ''


def parse_guess_payload(payload: Optional[Mapping]) -> GuessInput:
    """Turn either {title, artist} or a free-text {guess} into a GuessInput.

    Split fields win when either is present. Free text is split on the
    first dash (hyphen, en or em dash), then on the word "by"; title comes
    first. With no separator the whole string is the title.
    """
    payload = payload or {}
    title = _field(payload, 'title')
    artist = _field(payload, 'artist')
    if title or artist:
        return GuessInput(title=title, artist=artist)

    raw = _field(payload, 'guess')
    if not raw:
        return GuessInput()

    parts = _DASH_SPLIT.split(raw)
    if len(parts) > 1:
        return GuessInput(title=parts[0].strip(), artist=' - '.join(parts[1:]).strip())

    match = _BY_SPLIT.match(raw)
    if match:
        return GuessInput(title=match.group(1).strip(), artist=match.group(2).strip())

    return GuessInput(title=raw)


def _track_artist(track: Mapping) -> str:
    artist = track.get('artist')
    if isinstance(artist, str):
        return artist
    if isinstance(artist, Mapping) and isinstance(artist.get('name'), str):
        return artist['name']
    return ''


def evaluate_guess(guess: GuessInput, track: Optional[Mapping]) -> GuessEvaluation:
    track = track or {}
    guessed_title = normalize_song_text(guess.title)
    guessed_artist = normalize_song_text(guess.artist)
    song_title = normalize_song_text(track.get('title'))
    song_artist = normalize_song_text(_track_artist(track))

    title_match = bool(guessed_title and song_title and guessed_title == song_title)
    artist_match = bool(guessed_artist and song_artist and guessed_artist == song_artist)
    if title_match and artist_match:
        result = RESULT_SOLVED
    elif artist_match:
        result = RESULT_ARTIST
    else:
        result = RESULT_MISS
    return GuessEvaluation(title_match=title_match, artist_match=artist_match, result=result)
