"""Regex-based field extraction: company, title, location, URL, source, job type."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

import structlog

from jobsync.email.parser import NormalizedMessage
from jobsync.extraction.types import ExtractedData

logger = structlog.get_logger(__name__)

_FLAGS = re.IGNORECASE | re.MULTILINE


def _compile_all(patterns: Sequence[str]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, _FLAGS) for p in patterns)


# ── Gazetteer ─────────────────────────────────────────────

AUSTRALIAN_CITIES: tuple[str, ...] = (
    "Sydney", "Melbourne", "Brisbane", "Perth", "Adelaide", "Canberra",
    "Gold Coast", "Newcastle", "Hobart", "Darwin", "Wollongong", "Geelong",
    "Townsville", "Cairns", "Toowoomba", "Ballarat", "Bendigo", "Albury",
    "Launceston", "Mackay", "Rockhampton", "Bunbury", "Bundaberg",
    # Suburbs and business districts
    "Parramatta", "North Sydney", "Chatswood", "Macquarie Park", "Olympic Park",
    "CBD", "Inner West", "Eastern Suburbs", "Northern Beaches",
    "South Melbourne", "Richmond", "Docklands", "St Kilda", "Fitzroy",
    "Fortitude Valley", "South Bank", "West End",
)

AUSTRALIAN_STATES: tuple[str, ...] = (
    "NSW", "VIC", "QLD", "WA", "SA", "TAS", "ACT", "NT",
    "New South Wales", "Victoria", "Queensland", "Western Australia",
    "South Australia", "Tasmania", "Australian Capital Territory", "Northern Territory",
)


@dataclass(frozen=True)
class Gazetteer:
    """Place names recognised by location extraction."""

    cities: tuple[str, ...]
    states: tuple[str, ...] = ()

    def location_patterns(self) -> tuple[re.Pattern[str], ...]:
        """City (optionally followed by a state) and "<role> in <city>" patterns."""
        if not self.cities:
            return ()
        cities = "|".join(re.escape(c) for c in self.cities)
        city_state = f"({cities})"
        if self.states:
            states = "|".join(re.escape(s) for s in self.states)
            city_state += rf"(?:,?\s*(?:{states}))?"
        return (
            re.compile(city_state, re.IGNORECASE),
            re.compile(rf"(?:position|role|job|office|located) in ({cities})", re.IGNORECASE),
        )


DEFAULT_GAZETTEER = Gazetteer(cities=AUSTRALIAN_CITIES, states=AUSTRALIAN_STATES)


def load_gazetteer(path: Optional[Path | str]) -> Gazetteer:
    """Load ``{"cities": [...], "states": [...]}`` from JSON, or the default list."""
    if path is None:
        return DEFAULT_GAZETTEER
    data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    gazetteer = Gazetteer(
        cities=tuple(str(c) for c in data.get("cities", [])),
        states=tuple(str(s) for s in data.get("states", [])),
    )
    logger.info("gazetteer_loaded", path=str(path), cities=len(gazetteer.cities))
    return gazetteer


# ── Lookup tables ─────────────────────────────────────────

JOB_TYPES: Mapping[str, tuple[str, ...]] = {
    "full-time": ("full-time", "full time", "fulltime", "ft", "permanent full"),
    "part-time": ("part-time", "part time", "parttime", "pt"),
    "contract": ("contract", "contractor", "fixed term", "fixed-term"),
    "casual": ("casual",),
    "temporary": ("temporary", "temp"),
    "internship": ("internship", "intern"),
    "graduate": ("graduate", "grad program", "graduate program", "new grad"),
    "apprenticeship": ("apprenticeship", "apprentice", "traineeship", "trainee"),
}

# Keywords match on word boundaries so "ft" and "temp" do not fire inside words
_JOB_TYPE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (kind, re.compile(r"\b" + re.escape(keyword) + r"\b", re.IGNORECASE))
    for kind, keywords in JOB_TYPES.items()
    for keyword in keywords
)

JOB_SOURCES: Mapping[str, tuple[str, ...]] = {
    "SEEK": ("seek.com.au", "seek.com", "@seek"),
    "LinkedIn": ("linkedin.com", "@linkedin"),
    "Indeed": ("indeed.com", "@indeed", "indeedassessments"),
    "Greenhouse": ("greenhouse.io", "@greenhouse"),
    "Workday": ("workday.com", "myworkday.com", "@myworkday"),
    "Lever": ("lever.co", "@lever"),
    "SmartRecruiters": ("smartrecruiters.com", "@smartrecruiters"),
    "iCIMS": ("icims.com", "@icims"),
    "Jobvite": ("jobvite.com", "@jobvite"),
    "Taleo": ("taleo.net", "@taleo"),
    "Jora": ("jora.com", "@jora"),
    "CareerOne": ("careerone.com.au", "@careerone"),
    "GradConnection": ("gradconnection.com", "@gradconnection"),
    "Prosple": ("prosple.com", "@prosple"),
    "APSJobs": ("apsjobs.gov.au", "@apsjobs"),
    "Hatch": ("hatch.team", "@hatch"),
}


@dataclass(frozen=True)
class PatternSet:
    company: tuple[re.Pattern[str], ...] = ()
    job_title: tuple[re.Pattern[str], ...] = ()


SOURCE_PATTERNS: Mapping[str, PatternSet] = {
    "seek": PatternSet(
        company=_compile_all([
            r"application for .+? was (?:successfully )?submitted to (.+?)(?:\.|$)",
            r"applied (?:for|to) .+? at (.+?)(?:\.|$)",
        ]),
        job_title=_compile_all([
            r"application for (.+?) was (?:successfully )?submitted",
            r"applied (?:for|to) (.+?) at",
        ]),
    ),
    "linkedin": PatternSet(
        company=_compile_all([
            r"application (?:was )?sent to (.+?)(?:\.|$)",
            r"applied to (.+?) on LinkedIn",
            r"(.+?) is reviewing your application",
            r"(.+?) viewed your application",
            r"application to (.+?)(?:\.|$)",
        ]),
        job_title=_compile_all([
            r"application for (.+?) (?:was )?sent",
            r"applied for (.+?) at",
            r"(.+?) role at",
            r"position:?\s*(.+?)(?:\n|$)",
        ]),
    ),
    "indeed": PatternSet(
        company=_compile_all([
            r"application to (.+?)(?:\.|$)",
            r"applied to (.+?) for",
            r"(.+?) has received your application",
        ]),
        job_title=_compile_all([
            r"applied to .+? for (.+?)(?:\.|$)",
            r"application for (.+?) at",
        ]),
    ),
    "greenhouse": PatternSet(
        company=_compile_all([
            r"thank(?:s| you) for applying to (.+?)(?:\.|!|$)",
            r"application (?:for|to|at) (?:.+? at )?(.+?)(?:\.|$)",
            r"(.+?) - Application",
        ]),
        job_title=_compile_all([
            r"applying (?:for|to) (?:the )?(.+?) (?:position|role|opportunity)",
            r"application for (?:the )?(.+?) (?:at|position|role)",
            r"position:?\s*(.+?)(?:\n|$)",
        ]),
    ),
    "workday": PatternSet(
        company=_compile_all([
            r"thank(?:s| you) for (?:your )?interest in (.+?)(?:\.|!|$)",
            r"on your (.+?) Application",
            r"(.+?) - Application",
            r"(.+?) Careers",
        ]),
        job_title=_compile_all([
            r"for applying for the role of (.+?)\.\s*We",
            r"for applying for the (?:role|position) of (.+?)(?:\.|!|$)",
            r"position of\s*(?:&nbsp;)?(.+?)(?:\s*(?:&nbsp;)?(?:with|at)\s|\.|\s*–|$)",
            r"role of\s*(.+?)(?:\.\s*We|\s*with\s|\.|\s*–|$)",
            r"(?:role|job|position):?\s*(.+?)(?:\n|$)",
        ]),
    ),
    "lever": PatternSet(
        company=_compile_all([
            r"thank(?:s| you) for applying to (.+?)(?:\.|!|$)",
            r"application (?:to|at) (.+?)(?:\.|$)",
        ]),
        job_title=_compile_all([
            r"applying for (?:the )?(.+?) (?:position|role)",
            r"application for (?:the )?(.+?)(?:\.|$)",
        ]),
    ),
}

GENERIC_PATTERNS = PatternSet(
    company=_compile_all([
        r"thank(?:s| you)(?: for)? (?:applying|your (?:interest|application)) (?:to|at|with) (.+?)(?:\.|!|$)",
        r"(.+?) has received your application",
        r"your application (?:to|at|with) (.+?)(?:\.|$)",
        r"application for .+? was (?:successfully )?submitted to (.+?)(?:\.|$)",
        r"application for .+? at (.+?)(?:\.|$)",
        r"^(.+?) - (?:Application|Thank you|Your application)",
        r"(?:position|role|job|opportunity) at (.+?)(?:\.|,|$)",
    ]),
    job_title=_compile_all([
        r"for applying for the role of (.+?)\.\s*We['’]ll",
        r"for applying for (?:the )?(?:role|position) (?:of )?(.+?)(?:\.|!|$)",
        r"thank(?:s| you) for applying for (?:the )?(?!role|position)(.+?)(?:\.|!| at)",
        r"application for (?:the )?(?:position of )?(.+?)(?:\.|!| at| has| was)",
        r"position of\s*(?:&nbsp;)?(.+?)(?:\.\s*We['’]ll|\s*with\s)",
        r"position of\s*(?:&nbsp;)?(.+?)(?:\.|\s*(?:&nbsp;)?(?:with|at)\s)",
        r"the (.+?) (?:role|position|opportunity)",
        r"(?:applying for|applied for|application for) (?:the )?(.+?) at",
        r"(?:role|position|job|title):?\s*(.+?)(?:\n|$)",
    ]),
)

_LOCATION_PHRASES = _compile_all([
    r"location:?\s*(.+?)(?:\n|$)",
    r"based in (.+?)(?:\.|,|$)",
])

_APPLICATION_URL_PATTERNS = (
    re.compile(
        r"(https?://[^\s<>\"]+(?:/jobs?/|/careers?/|/apply|/application|/position)[^\s<>\"]*)",
        re.IGNORECASE,
    ),
    re.compile(r"(https?://[^\s<>\"]+)", re.IGNORECASE),
)

_URL_BLOCKLIST = ("unsubscribe", "tracking", ".png", ".jpg", ".gif", "privacy", "mailto:")

_SENDER_COMPANY_PATTERNS = (
    re.compile(r"^(.+?) (?:Careers|Recruiting|Talent|HR|Jobs|Hiring|Team)$", re.IGNORECASE),
    re.compile(r"^(.+?) (?:via|from) ", re.IGNORECASE),
)

_PERSON_NAME = re.compile(r"^[A-Z][a-z]+ [A-Z][a-z]+$")


# ── Value cleaning ────────────────────────────────────────

_CORPORATE_SUFFIX = re.compile(r"\s*(?:Pty Ltd|Ltd|Inc|LLC|Corp|Corporation)\.?$", re.IGNORECASE)
_ROLE_SUFFIX = re.compile(r"\s*(?:Hiring|Careers|Recruiting|Talent|Jobs)$", re.IGNORECASE)


def clean_extracted_value(value: Optional[str]) -> Optional[str]:
    """Normalize a captured group; returns None when nothing useful is left."""
    if not value:
        return None
    text = value.strip()
    text = (
        text.replace("&nbsp;", " ")
        .replace("&amp;", "&")
        .replace("&lt;", "<")
        .replace("&gt;", ">")
    )
    text = re.sub(r"&#\d+;", "", text)
    text = re.sub(r"[.,!?;:]+$", "", text)
    text = re.sub(r"^[\"']|[\"']$", "", text)
    text = re.sub(r"\s+", " ", text)
    text = _CORPORATE_SUFFIX.sub("", text)
    text = _ROLE_SUFFIX.sub("", text)
    text = text.strip()
    return text or None


def _first_capture(patterns: Sequence[re.Pattern[str]], text: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match and match.group(1):
            cleaned = clean_extracted_value(match.group(1))
            if cleaned:
                return cleaned
    return None


# ── Field extractors ──────────────────────────────────────


def detect_source(message: NormalizedMessage) -> Optional[str]:
    """Job board the message came through, judged by sender/subject then body."""
    header_text = f"{message.from_email}\n{message.subject}".lower()
    for source, needles in JOB_SOURCES.items():
        if any(needle in header_text for needle in needles):
            return source

    body = message.best_text.lower()
    for source, needles in JOB_SOURCES.items():
        if any(needle in body for needle in needles):
            return source
    return None


def detect_job_type(text: str) -> Optional[str]:
    for kind, pattern in _JOB_TYPE_PATTERNS:
        if pattern.search(text or ""):
            return kind
    return None


def extract_location(text: str, gazetteer: Gazetteer = DEFAULT_GAZETTEER) -> Optional[str]:
    for pattern in (*_LOCATION_PHRASES, *gazetteer.location_patterns()):
        match = pattern.search(text or "")
        if match and match.group(1):
            return clean_extracted_value(match.group(1))
    return None


def extract_application_url(text: str) -> Optional[str]:
    """First job-looking URL in *text*, else the first URL that is not noise."""
    for pattern in _APPLICATION_URL_PATTERNS:
        for match in pattern.finditer(text or ""):
            url = match.group(1)
            if not any(blocked in url.lower() for blocked in _URL_BLOCKLIST):
                return url
    return None


def extract_company_from_sender(from_name: str) -> Optional[str]:
    """Derive a company from a display name like "Acme Careers" or "Acme"."""
    name = (from_name or "").strip()
    if not name:
        return None
    for pattern in _SENDER_COMPANY_PATTERNS:
        match = pattern.search(name)
        if match and match.group(1):
            return clean_extracted_value(match.group(1))
    # "Firstname Lastname" is a person, not an organisation
    if _PERSON_NAME.match(name):
        return None
    return clean_extracted_value(name)


def extract_by_rules(
    message: NormalizedMessage,
    gazetteer: Gazetteer = DEFAULT_GAZETTEER,
) -> ExtractedData:
    """Run every regex cascade over *message*. Never raises; missing fields are None."""
    body = message.best_text
    combined = f"{message.subject}\n{body}"

    source = detect_source(message)
    source_key = re.sub(r"\s+", "", source.lower()) if source else ""
    specific = SOURCE_PATTERNS.get(source_key, PatternSet())

    company = (
        _first_capture(specific.company, combined)
        or _first_capture(GENERIC_PATTERNS.company, combined)
        or extract_company_from_sender(message.from_name)
    )
    job_title = _first_capture(specific.job_title, combined) or _first_capture(
        GENERIC_PATTERNS.job_title, combined
    )

    return ExtractedData(
        company=company,
        job_title=job_title,
        location=extract_location(combined, gazetteer),
        application_url=extract_application_url(body),
        source=source,
        job_type=detect_job_type(combined),
    )


def needs_llm_fallback(data: ExtractedData) -> bool:
    """The model extractor runs only when company or title is still missing."""
    return not data.company or not data.job_title
