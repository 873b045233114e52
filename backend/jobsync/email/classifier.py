"""Deterministic rule engine that labels obvious messages without the LLM.

Rules are plain data: a message field, a regex tested against the
lower-cased field value, an optional side predicate over the whole
message, and the rule id reported as the classification reason.
Labels are checked in ``CHECK_ORDER``; within a label the first matching
rule wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from jobsync.email.parser import NormalizedMessage
from jobsync.extraction.types import ClassificationResult, ClassificationType

RULE_CONFIDENCE = 0.95

Predicate = Callable[[NormalizedMessage], bool]


@dataclass(frozen=True)
class Rule:
    """One pattern rule. ``field`` is from | subject | sender_name | text_body."""

    field: str
    pattern: re.Pattern[str]
    reason: str
    condition: Optional[Predicate] = None

    def matches(self, values: Mapping[str, str], message: NormalizedMessage) -> bool:
        if not self.pattern.search(values.get(self.field, "")):
            return False
        return self.condition is None or self.condition(message)


def _rule(field: str, pattern: str, reason: str, condition: Optional[Predicate] = None) -> Rule:
    return Rule(field, re.compile(pattern, re.IGNORECASE), reason, condition)


def _subject_has(pattern: str) -> Predicate:
    compiled = re.compile(pattern, re.IGNORECASE)
    return lambda m: bool(compiled.search(m.subject))


def _subject_lacks(pattern: str) -> Predicate:
    compiled = re.compile(pattern, re.IGNORECASE)
    return lambda m: not compiled.search(m.subject)


def _from_has(pattern: str) -> Predicate:
    compiled = re.compile(pattern, re.IGNORECASE)
    return lambda m: bool(compiled.search(m.from_email))


def _sender_name_has(pattern: str) -> Predicate:
    compiled = re.compile(pattern, re.IGNORECASE)
    return lambda m: bool(compiled.search(m.from_name or ""))


def _body_head_has(pattern: str, chars: int = 500) -> Predicate:
    """Predicate over the first *chars* characters of the plain-text body."""
    compiled = re.compile(pattern, re.IGNORECASE)
    return lambda m: bool(compiled.search(m.text_body[:chars]))


# ── Rule tables ───────────────────────────────────────────

_OTHER_RULES: tuple[Rule, ...] = (
    # Job alert digests
    _rule("from", r"jobnotification@", "job-alert-sender"),
    _rule("from", r"jobs2web\.com", "job-alert-sender"),
    _rule("from", r"job-alerts@linkedin\.com", "linkedin-job-alert"),
    _rule("subject", r"^(your )?(job alert|new jobs? posted)", "job-alert-subject"),
    _rule("subject", r"jobs? (from|at|posted)", "job-alert-subject"),
    _rule("sender_name", r"job alerts?", "job-alert-sender-name"),
    _rule("subject", r"top jobs from", "job-alert-subject"),
    _rule("from", r"seek.*grad|gradconnection", "job-alert"),
    _rule("from", r"@linkedin\.com$", "linkedin-alert", _sender_name_has(r"job alerts?")),
    # GitHub
    _rule("from", r"@github\.com$", "github"),
    _rule("from", r"noreply@github\.com", "github"),
    _rule("subject", r"\[.*/.*\] (pull request|issue|push|comment)", "github-notification"),
    # Security / DMARC
    _rule("from", r"noreply-dmarc-support@google\.com", "dmarc"),
    _rule("subject", r"^(security alert|dmarc.*report)", "security-alert"),
    _rule("subject", r"report domain:.*submitter:", "dmarc"),
    _rule("from", r"dmarc.*report|dmarc-support", "dmarc"),
    # Shopping and services
    _rule("from", r"@amazon\.(com|co|com\.au)", "ecommerce"),
    _rule("from", r"@costco", "retail"),
    _rule("from", r"@garmin\.", "service"),
    _rule("from", r"@vultr\.", "hosting"),
    _rule("from", r"@kickstarter\.", "crowdfunding"),
    _rule("from", r"@ebay\.", "ecommerce"),
    _rule("from", r"@paypal\.", "payments"),
    _rule("from", r"@netflix\.", "streaming"),
    _rule("from", r"@spotify\.", "streaming"),
    # Marketing and newsletters
    _rule("from", r"mailchimp|mcsv\.net", "marketing"),
    _rule("from", r"@sendgrid\.", "marketing"),
    _rule("subject", r"^(don't miss|final hours|last chance)", "marketing"),
    _rule("subject", r"unsubscribe|newsletter", "marketing"),
    _rule("from", r"huggingface|hugging.*face", "tech-newsletter", _subject_lacks(r"job|career|apply")),
    _rule("from", r"@slack\.com$", "slack-general", _subject_lacks(r"onboard|welcome.*team")),
    _rule("from", r"@microsoft\.com$", "newsletter", _subject_has(r"learning goals|microsoft learn")),
    _rule("from", r"ibm.*avature", "ibm-marketing", _subject_has(r"tips|webinar|event|join.*day")),
    # Government reporting
    _rule("from", r"workforce.*australia|dewr\.gov", "govt-reporting"),
    # Personal mail
    _rule("subject", r"^(fwd:|re:)?\s*((yo|hey|sup|running late|pdf)\b|\.pdf$)", "personal"),
    _rule("subject", r"^(fwd:|re:)?\s*\w+\s+(video|song|music|watch this)", "personal-share"),
    _rule("from", r"vet|veterinary|petbarn|pet.*hospital", "pet-services"),
    # Recruitment spam
    _rule(
        "from",
        r"outlier.*ai|@privateemail\.com",
        "recruitment-spam",
        _subject_has(r"action required|invitation|matches.*job"),
    ),
    # Events
    _rule(
        "subject",
        r"webinar|event.*registration|join.*session",
        "event-invite",
        _subject_lacks(r"interview|screen|assessment"),
    ),
    _rule("subject", r"go beyond human limits|days? to go:", "event-promo"),
)

_JOB_RESPONSE_RULES: tuple[Rule, ...] = (
    _rule("subject", r"thank(s| ?you|you) for (your )?(apply|application|interest)", "thank-you-applying"),
    _rule("subject", r"we('ve| have) received your application", "received-application"),
    _rule("subject", r"application (received|submitted|complete|acknowledged)", "application-received"),
    _rule("subject", r"your application (for|to|at|with)", "your-application"),
    _rule("subject", r"thanks for applying", "thanks-applying"),
    _rule("subject", r"thank you for your interest in", "thank-interest"),
    # ATS confirmations
    _rule("from", r"@.*workday", "workday-confirmation", _subject_has(r"thank|received|application")),
    _rule(
        "from",
        r"recruitment@|careers@|talent@|hiring@",
        "recruitment-confirmation",
        _subject_has(r"thank|received|confirm"),
    ),
    _rule(
        "from",
        r"greenhouse|lever|icims|jobvite|smartrecruiters",
        "ats-confirmation",
        _subject_has(r"thank|received|apply"),
    ),
    # Employer-specific phrasing
    _rule("subject", r"we got it.*in the mix", "canva-confirmation"),
    _rule("subject", r"application viewed", "application-viewed"),
    _rule("subject", r"verify your candidate (account|profile)", "account-verify"),
    _rule("subject", r"good move|you('re| are) in the mix", "confirmation-positive"),
    _rule("subject", r"your.*journey begins", "journey-begins"),
    _rule("subject", r"job application acknowledgment", "acknowledgment"),
    _rule(
        "subject",
        r"registration confirmation",
        "recruitment-registration",
        _from_has(r"recruit|career|talent"),
    ),
    _rule("subject", r"welcome to.*careers", "careers-welcome"),
    _rule(
        "from",
        r"springboard\.com\.au",
        "springboard-confirmation",
        _subject_has(r"application|reference"),
    ),
    _rule("subject", r"received your job application", "received-job-app"),
)

_INTERVIEW_RULES: tuple[Rule, ...] = (
    _rule("subject", r"interview (invite|invitation|confirm|schedule)", "interview-invite"),
    _rule("subject", r"phone screen", "phone-screen"),
    _rule("subject", r"you('re| are) invited.*(interview|screen|call|assessment)", "invited-interview"),
    _rule("subject", r"schedule.*(interview|call|meeting)", "schedule-interview"),
    _rule("subject", r"invitation:.*interview", "calendar-interview"),
    _rule("subject", r"(technical|coding) (assessment|challenge|test)", "assessment"),
    _rule("subject", r"skills.*assessment", "skills-assessment"),
    _rule("subject", r"role alignment discussion", "alignment-call"),
    _rule("subject", r"talent introduction session", "intro-session"),
    _rule("subject", r"in-person.*(assessment|interview|meeting)", "in-person-interview"),
    _rule("subject", r"online.*(assessment|interview|discussion)", "online-interview"),
    _rule("subject", r"video (interview|call|screen)", "video-interview"),
    _rule("subject", r"next.*round|round.*interview", "next-round"),
    _rule("subject", r"meet.*team|team.*meet", "team-meet", _from_has(r"interview|hire|recruit")),
    _rule(
        "subject",
        r"^invitation:",
        "calendar-invite",
        _subject_has(r"interview|screen|assessment|call"),
    ),
)

_REJECTION_RULES: tuple[Rule, ...] = (
    _rule("subject", r"application outcome", "outcome-likely-rejection", _subject_lacks(r"thank|received")),
    _rule("subject", r"outcome of your application", "outcome"),
    _rule("subject", r"unsuccessful.*application", "unsuccessful"),
    _rule(
        "subject",
        r"update.*application",
        "rejection-update",
        _body_head_has(r"regret|unfortunately|unable|ineligible|not.*proceed|not.*successful"),
    ),
    _rule("subject", r"we('ve| have) reviewed your application", "reviewed-likely-rejection"),
    _rule("subject", r"not (be )?(moving|proceed|progress)ing forward", "not-proceeding"),
    _rule("subject", r"regret to inform", "regret"),
    _rule("subject", r"role update|position.*update", "role-update-rejection", _subject_lacks(r"interview|schedule")),
    _rule(
        "subject",
        r"application.*status|status.*application",
        "status-rejection",
        _body_head_has(r"close|filled|not.*selected"),
    ),
    _rule(
        "subject",
        r"thank you for.*interest",
        "polite-rejection",
        _body_head_has(r"unfortunately|regret|unable|ineligible|not.*time|other candidates"),
    ),
)

_FOLLOW_UP_RULES: tuple[Rule, ...] = (
    _rule("subject", r"reminder:.*application", "application-reminder"),
    _rule("subject", r"next steps", "next-steps", _subject_lacks(r"thank|received")),
    _rule("subject", r"finish your application", "finish-application"),
    _rule("subject", r"complete your (application|profile|assessment)", "complete-application"),
    _rule("subject", r"waiting for your", "waiting"),
    _rule(
        "from",
        r"codesignal|hackerrank|codility",
        "assessment-reminder",
        _subject_has(r"reminder|waiting|complete"),
    ),
    _rule("subject", r"assessment (completed|submitted)", "assessment-completed"),
    _rule("subject", r"recruiters.*looking|profile.*view", "profile-activity"),
    _rule("subject", r"what('s| is) next", "whats-next"),
    _rule("subject", r"you('ve| have) applied.*what next", "applied-next"),
    _rule("subject", r"keep receiving.*email", "email-preferences"),
    _rule("subject", r"update on.*recruitment", "recruitment-update"),
    _rule("subject", r"take.*step|final.*step", "take-step", _subject_lacks(r"interview")),
    _rule("from", r"testgorilla", "testgorilla-followup", _subject_has(r"submitted|next|result")),
)

CLASSIFICATION_RULES: Mapping[ClassificationType, tuple[Rule, ...]] = {
    ClassificationType.OTHER: _OTHER_RULES,
    ClassificationType.JOB_RESPONSE: _JOB_RESPONSE_RULES,
    ClassificationType.INTERVIEW: _INTERVIEW_RULES,
    ClassificationType.REJECTION: _REJECTION_RULES,
    ClassificationType.FOLLOW_UP: _FOLLOW_UP_RULES,
}

# "other" short-circuits before any job heuristic; rejection before follow-up
CHECK_ORDER: tuple[ClassificationType, ...] = (
    ClassificationType.OTHER,
    ClassificationType.INTERVIEW,
    ClassificationType.REJECTION,
    ClassificationType.JOB_RESPONSE,
    ClassificationType.FOLLOW_UP,
)


def _field_values(message: NormalizedMessage) -> dict[str, str]:
    return {
        "from": (message.from_email or "").lower(),
        "subject": (message.subject or "").lower(),
        "sender_name": (message.from_name or "").lower(),
        "text_body": (message.text_body or "").lower(),
    }


def find_matching_rule(message: NormalizedMessage) -> Optional[tuple[ClassificationType, Rule]]:
    """Return the first ``(label, rule)`` pair that fires, or None."""
    values = _field_values(message)
    for kind in CHECK_ORDER:
        for rule in CLASSIFICATION_RULES.get(kind, ()):
            if rule.matches(values, message):
                return kind, rule
    return None


def classify_by_rules(message: NormalizedMessage) -> Optional[ClassificationResult]:
    """Label *message* from the rule tables, or return None to escalate to the LLM.

    Pure: no I/O, no logging of message content.
    """
    hit = find_matching_rule(message)
    if hit is None:
        return None
    kind, rule = hit
    return ClassificationResult(
        type=kind,
        confidence=RULE_CONFIDENCE,
        source="rule",
        reason=rule.reason,
    )


def is_high_variance_correction(message: NormalizedMessage) -> bool:
    """True when no rule would have labelled *message*.

    Only these corrections teach the model something; a correction on a
    rule-caught message means the rule table needs fixing instead.
    """
    return find_matching_rule(message) is None
