#!/usr/bin/env python3
"""
Job listing model for DriveHR webhook payloads.

Incoming jobs arrive as loosely-typed JSON objects. IncomingListing.from_payload
resolves camelCase/snake_case aliases, strips unsafe markup and produces the
field set that is persisted for each job.
"""
import json
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Comment

from config import LISTING_SOURCE, SYNC_VERSION

DB_DATETIME_FORMAT = '%Y-%m-%d %H:%M:%S'

# Removed together with everything inside them
STRIPPED_WITH_CONTENT = [
    'script', 'style', 'iframe', 'frame', 'frameset', 'object', 'embed', 'applet',
    'form', 'input', 'button', 'select', 'textarea', 'noscript', 'template',
    'svg', 'math', 'link', 'meta', 'base',
]

ALLOWED_TAGS = {
    'a': {'href', 'title', 'target', 'rel'},
    'abbr': {'title'},
    'b': set(),
    'blockquote': {'cite'},
    'br': set(),
    'code': set(),
    'dd': set(),
    'div': {'class'},
    'dl': set(),
    'dt': set(),
    'em': set(),
    'h1': set(), 'h2': set(), 'h3': set(), 'h4': set(), 'h5': set(), 'h6': set(),
    'hr': set(),
    'i': set(),
    'img': {'src', 'alt', 'title', 'width', 'height'},
    'li': set(),
    'ol': {'start'},
    'p': {'class'},
    'pre': set(),
    'span': {'class'},
    'strong': set(),
    'sub': set(),
    'sup': set(),
    'table': set(), 'thead': set(), 'tbody': set(), 'tr': set(), 'th': {'colspan', 'rowspan'},
    'td': {'colspan', 'rowspan'},
    'u': set(),
    'ul': set(),
}

URL_ATTRIBUTES = {'href', 'src', 'cite'}
ALLOWED_URL_SCHEMES = ('http', 'https', 'mailto')

# camelCase is checked before snake_case
FIELD_ALIASES = {
    'job_type': ('type', 'jobType'),
    'employment_type': ('employmentType', 'employment_type'),
    'salary_range': ('salaryRange', 'salary_range'),
    'apply_url': ('applyUrl', 'apply_url'),
    'posted_date': ('postedDate', 'posted_date'),
    'expiry_date': ('expiryDate', 'expiry_date'),
    'source_url': ('sourceUrl', 'source_url'),
}

_LENIENT_DATE_FORMATS = [
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%d %H:%M',
    '%Y-%m-%d',
    '%Y/%m/%d',
    '%m/%d/%Y',
    '%m/%d/%Y %H:%M',
    '%m-%d-%Y',
    '%B %d, %Y',
    '%b %d, %Y',
    '%d %B %Y',
    '%d %b %Y',
    '%B %d %Y',
    '%b %d %Y',
]

_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')


class InvalidListingError(ValueError):
    pass


def _to_text(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ''
    if isinstance(value, (dict, list)):
        return ''
    return _CONTROL_CHARS.sub('', str(value))


def _strip_markup(text: str) -> str:
    if '<' not in text:
        return text
    return BeautifulSoup(text, 'html.parser').get_text()


def sanitize_text(value: Any) -> str:
    """Single-line plain text: markup removed, whitespace collapsed"""
    return ' '.join(_strip_markup(_to_text(value)).split())


def sanitize_textarea(value: Any) -> str:
    """Multi-line plain text: markup removed, line breaks kept"""
    text = _strip_markup(_to_text(value)).replace('\r\n', '\n').replace('\r', '\n')
    lines = [' '.join(line.split()) for line in text.split('\n')]
    return '\n'.join(lines).strip()


def sanitize_url(value: Any) -> str:
    url = ''.join(_to_text(value).split())
    if not url:
        return ''

    parsed = urlparse(url)
    if parsed.scheme:
        return url if parsed.scheme.lower() in ALLOWED_URL_SCHEMES else ''

    if url.startswith(('/', '#', '?')):
        return url

    # Bare host such as www.example.com/apply
    if '.' in url.split('/')[0] and ':' not in url:
        return 'http://' + url
    return ''


def sanitize_rich_text(value: Any) -> str:
    """Keep safe formatting markup, drop scripts, handlers and unknown tags"""
    html = _to_text(value)
    if not html.strip():
        return ''
    if '<' not in html:
        return html.strip()

    soup = BeautifulSoup(html, 'html.parser')

    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    for tag in soup.find_all(STRIPPED_WITH_CONTENT):
        if not tag.decomposed:
            tag.decompose()

    for tag in soup.find_all(True):
        allowed = ALLOWED_TAGS.get(tag.name)
        if allowed is None:
            tag.unwrap()
            continue
        for attr in list(tag.attrs):
            if attr not in allowed:
                del tag[attr]
            elif attr in URL_ATTRIBUTES and not sanitize_url(tag[attr]):
                del tag[attr]

    return str(soup).strip()


def parse_date(value: Any, now: Optional[datetime] = None) -> str:
    """Parse a loosely formatted date into a UTC database timestamp.

    Missing or unparsable values fall back to now.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    fallback = now.astimezone(timezone.utc).strftime(DB_DATETIME_FORMAT)

    text = sanitize_text(value)
    if not text:
        return fallback

    parsed = None

    if text.isdigit() and len(text) >= 9:
        parsed = datetime.fromtimestamp(int(text), tz=timezone.utc)

    if parsed is None:
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            parsed = None

    if parsed is None:
        for fmt in _LENIENT_DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            parsed = None

    if parsed is None:
        return fallback

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).strftime(DB_DATETIME_FORMAT)


def _first_present(job: Dict[str, Any], keys) -> Any:
    for key in keys:
        value = job.get(key)
        if value is not None and value != '':
            return value
    return ''


def normalize_external_id(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return ''
    return sanitize_text(value)


@dataclass
class IncomingListing:
    external_id: str
    title: str
    description: str = ''
    summary: str = ''
    department: str = ''
    location: str = ''
    job_type: str = ''
    employment_type: str = ''
    salary_range: str = ''
    apply_url: str = ''
    posted_date: str = ''
    expiry_date: str = ''
    source_url: str = ''
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, job: Any) -> 'IncomingListing':
        if not isinstance(job, dict):
            raise InvalidListingError('Invalid job data format')

        external_id = normalize_external_id(job.get('id'))
        title = sanitize_text(job.get('title'))
        if not external_id or not title:
            raise InvalidListingError('Missing required fields: id and title are required')

        raw = {key: value for key, value in job.items() if key != 'description'}

        return cls(
            external_id=external_id,
            title=title,
            description=sanitize_rich_text(job.get('description')),
            summary=sanitize_textarea(job.get('summary')),
            department=sanitize_text(job.get('department')),
            location=sanitize_text(job.get('location')),
            job_type=sanitize_text(_first_present(job, FIELD_ALIASES['job_type'])),
            employment_type=sanitize_text(_first_present(job, FIELD_ALIASES['employment_type'])),
            salary_range=sanitize_text(_first_present(job, FIELD_ALIASES['salary_range'])),
            apply_url=sanitize_url(_first_present(job, FIELD_ALIASES['apply_url'])),
            posted_date=sanitize_text(_first_present(job, FIELD_ALIASES['posted_date'])),
            expiry_date=sanitize_text(_first_present(job, FIELD_ALIASES['expiry_date'])),
            source_url=sanitize_url(_first_present(job, FIELD_ALIASES['source_url'])),
            raw=raw,
        )

    def to_fields(self, now: Optional[datetime] = None, sync_version: str = SYNC_VERSION) -> Dict[str, Any]:
        """Column values written for this listing on create and update"""
        if now is None:
            now = datetime.now(timezone.utc)
        return {
            'job_id': self.external_id,
            'title': self.title,
            'description': self.description,
            'summary': self.summary,
            'department': self.department,
            'location': self.location,
            'job_type': self.job_type,
            'employment_type': self.employment_type,
            'salary_range': self.salary_range,
            'apply_url': self.apply_url,
            'posted_date': self.posted_date,
            'expiry_date': self.expiry_date,
            'posted_at': parse_date(self.posted_date, now),
            'source': LISTING_SOURCE,
            'source_url': self.source_url,
            'raw_data': json.dumps(self.raw, ensure_ascii=False, default=str),
            'last_updated': now.astimezone(timezone.utc).strftime(DB_DATETIME_FORMAT),
            'sync_version': sync_version,
        }


LISTING_COLUMNS = [
    'job_id', 'title', 'description', 'summary', 'department', 'location',
    'job_type', 'employment_type', 'salary_range', 'apply_url', 'posted_date',
    'expiry_date', 'posted_at', 'source', 'source_url', 'raw_data',
    'last_updated', 'sync_version',
]


@dataclass
class StoredListing:
    record_id: int
    job_id: str
    title: str
    description: str = ''
    summary: str = ''
    department: str = ''
    location: str = ''
    job_type: str = ''
    employment_type: str = ''
    salary_range: str = ''
    apply_url: str = ''
    posted_date: str = ''
    expiry_date: str = ''
    posted_at: str = ''
    source: str = LISTING_SOURCE
    source_url: str = ''
    raw_data: str = '{}'
    last_updated: str = ''
    sync_version: str = ''
    status: str = 'publish'

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'StoredListing':
        known = cls.__dataclass_fields__.keys()
        values = {key: row[key] for key in known if key in row and row[key] is not None}
        if 'record_id' not in values and 'id' in row:
            values['record_id'] = row['id']
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        try:
            data['raw_data'] = json.loads(self.raw_data) if self.raw_data else {}
        except ValueError:
            pass
        return data
