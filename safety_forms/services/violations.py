# =============================================================================
# Violation Detector & Escalation Engine
# =============================================================================
#
# A deterministic pass over the raw extracted text. It runs in two places:
#   1. Inside normalization, augmenting whatever the provider reported.
#   2. As the sole authority inside the rule-based fallback.
#
# DETECTION
#   An ordered table of ViolationRule records. Each rule has a negative
#   signature and a positive signature over the same subject; it fires when
#   the negative matches and the positive matches nowhere in the text.
#   Two rule shapes:
#     - PPE items sitting next to a negative mark (✗ ✘ × ☒ ☐ [ ] X NO)
#     - Critical control measures mentioned without an affirmative mark
#       (✓ ✔ ☑ YES) on the same line
#
# ESCALATION
#   final = min(10, base + hrw + fatal_five + critical_uncontrolled + checkbox)
#
#   base                  provider score, else text heuristic in [1, 6]
#   hrw                   largest weight among matched high-risk-work families
#   fatal_five            +1 once if any Fatal Five family is mentioned
#   critical_uncontrolled +1 per CRITICAL issue not marked as controlled
#   checkbox              sum of fired rule weights, each rule at most once
#
# DESIGN DECISION: One canonical weight per hazard.
# Each subject appears in exactly one rule, so a hazard cannot be weighted
# twice by overlapping tables.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from safety_forms.models.analysis import (
    AnalysisResult,
    ComplianceIssue,
    EscalationDetail,
    FlaggedIssue,
    HRWFactor,
)

logger = logging.getLogger(__name__)

MIN_SCORE = 1
MAX_SCORE = 10
MAX_BASE_SCORE = 6

# Marks as they come out of OCR. "X" and "NO" only count as whole words.
NEGATIVE_MARK = r"(?:✗|✘|×|☒|☐|\[\s?\]|\bX\b|\bNO\b)"
AFFIRMATIVE_MARK = r"(?:✓|✔|☑|\bYES\b)"

# Between a PPE subject and its mark: punctuation, plus at most one of the
# verbs a checklist line typically carries ("Hard hat worn: ✗").
_ADJACENT = (
    r"[^\n\w]{0,6}"
    r"(?:(?:worn|used|on|provided|available|checked|in\s+use|required)"
    r"[^\n\w]{0,6})?"
)


def _adjacent(subject: str, mark: str) -> re.Pattern[str]:
    return re.compile(
        rf"(?:{mark}{_ADJACENT}(?:{subject})|(?:{subject}){_ADJACENT}{mark})",
        re.IGNORECASE,
    )


def _same_line(subject: str, mark: str) -> re.Pattern[str]:
    return re.compile(
        rf"(?:{mark}[^\n]{{0,80}}?(?:{subject})|(?:{subject})[^\n]{{0,80}}?{mark})",
        re.IGNORECASE,
    )


# ---------------------------------------------------------------------------
# Rule Table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ViolationRule:
    """One checkbox-violation rule: a subject plus its two signatures."""

    rule_id: str
    subject: str
    negative: re.Pattern[str]
    positive: re.Pattern[str]
    category: str
    severity: str
    weight: int
    description: str
    recommendation: str
    standard: str | None = None

    def fires(self, text: str) -> bool:
        return bool(self.negative.search(text)) and not self.positive.search(text)

    def to_issue(self) -> FlaggedIssue:
        return FlaggedIssue(
            category=self.category,
            type=self.subject,
            description=self.description,
            severity=self.severity,
            recommendation=self.recommendation,
            standard=self.standard,
            action_priority=self.severity,
            is_controlled=False,
            rule_id=self.rule_id,
            source="rule",
        )


def ppe_rule(
    rule_id: str,
    subject: str,
    pattern: str,
    severity: str,
    weight: int,
    standard: str | None = None,
) -> ViolationRule:
    """PPE item marked with a negative mark, and nowhere marked affirmatively."""
    return ViolationRule(
        rule_id=rule_id,
        subject=subject,
        negative=_adjacent(pattern, NEGATIVE_MARK),
        positive=_adjacent(pattern, AFFIRMATIVE_MARK),
        category="PPE",
        severity=severity,
        weight=weight,
        description=f"{subject} marked as not worn or not available",
        recommendation=f"Confirm {subject.lower()} is worn before work starts",
        standard=standard,
    )


def control_rule(
    rule_id: str,
    subject: str,
    pattern: str,
    severity: str,
    weight: int,
    recommendation: str,
    standard: str | None = None,
) -> ViolationRule:
    """Critical control mentioned on the form but never ticked off."""
    return ViolationRule(
        rule_id=rule_id,
        subject=subject,
        negative=re.compile(rf"(?:{pattern})", re.IGNORECASE),
        positive=_same_line(pattern, AFFIRMATIVE_MARK),
        category="CONTROL_MEASURE",
        severity=severity,
        weight=weight,
        description=f"{subject} listed without confirmation that it is in place",
        recommendation=recommendation,
        standard=standard,
    )


VIOLATION_RULES: tuple[ViolationRule, ...] = (
    # --- Critical controls ---
    control_rule(
        "h2s_monitor", "H2S monitor",
        r"\bh2s\s+(?:gas\s+)?(?:monitors?|detectors?)|personal\s+gas\s+(?:monitors?|detectors?)",
        "CRITICAL", 3,
        "Stop work until a calibrated H2S monitor is confirmed worn in the breathing zone",
        "WHS Regulation 2011 s.50",
    ),
    control_rule(
        "gas_test", "Gas test",
        r"\bgas\s+test(?:s|ing|ed)?\b|atmospheric\s+(?:test(?:ing)?|monitoring)",
        "CRITICAL", 3,
        "Complete and record an atmospheric gas test before entry",
        "AS 2865",
    ),
    control_rule(
        "isolation", "Energy isolation",
        r"\bisolations?\b|\block[\s-]?out\b|\btag[\s-]?out\b|\bLOTO\b",
        "HIGH", 2,
        "Verify isolation points are locked and tagged before work starts",
        "AS/NZS 4836",
    ),
    control_rule(
        "exclusion_zone", "Exclusion zone",
        r"exclusion\s+zones?|barricad(?:e|es|ing)\b",
        "HIGH", 2,
        "Establish and confirm the exclusion zone before work starts",
    ),
    # --- PPE ---
    ppe_rule(
        "ppe_harness", "Fall arrest harness",
        r"(?:safety\s+)?harness(?:es)?|fall\s+arrest(?:\s+system)?",
        "CRITICAL", 3, "AS/NZS 1891",
    ),
    ppe_rule(
        "ppe_hard_hat", "Hard hat",
        r"hard\s*hats?|safety\s+helmets?|head\s+protection",
        "HIGH", 2, "AS/NZS 1801",
    ),
    ppe_rule(
        "ppe_respirator", "Respirator",
        r"respirators?|respiratory\s+protection|dust\s+masks?",
        "HIGH", 2, "AS/NZS 1716",
    ),
    ppe_rule(
        "ppe_eye_protection", "Eye protection",
        r"safety\s+(?:glasses|goggles)|eye\s+protection",
        "MEDIUM", 1, "AS/NZS 1337",
    ),
    ppe_rule(
        "ppe_hearing_protection", "Hearing protection",
        r"hearing\s+protection|ear\s*(?:plugs|muffs)",
        "MEDIUM", 1, "AS/NZS 1270",
    ),
    ppe_rule(
        "ppe_gloves", "Gloves",
        r"(?:safety\s+|work\s+)?gloves",
        "MEDIUM", 1, "AS/NZS 2161",
    ),
    ppe_rule(
        "ppe_hi_vis", "High-visibility clothing",
        r"hi[\s-]*vis(?:ibility)?(?:\s+(?:vests?|clothing|shirts?))?|high[\s-]visibility",
        "MEDIUM", 1, "AS/NZS 4602",
    ),
    ppe_rule(
        "ppe_safety_boots", "Safety boots",
        r"safety\s+(?:boots|footwear|shoes)|steel[\s-]cap(?:ped)?\s+boots",
        "MEDIUM", 1, "AS/NZS 2210",
    ),
)


# ---------------------------------------------------------------------------
# Keyword Families
# ---------------------------------------------------------------------------

# (family, pattern, escalation weight)
HRW_FAMILIES: tuple[tuple[str, re.Pattern[str], int], ...] = tuple(
    (name, re.compile(pattern, re.IGNORECASE), weight)
    for name, pattern, weight in (
        ("WORKING_AT_HEIGHT",
         r"\bwork(?:ing)?\s+at\s+heights?\b|\belevated\s+work|\bladders?\b|\broof\s+work|\bEWP\b|elevating\s+work\s+platform",
         3),
        ("ELECTRICAL",
         r"\belectrical\s+work|\blive\s+(?:electrical|wires?|conductors?)|\bhigh\s+voltage|\benergi[sz]ed\s+(?:equipment|circuits?)|\bswitchboards?\b",
         4),
        ("CONFINED_SPACE", r"\bconfined\s+spaces?\b", 4),
        ("MOBILE_PLANT",
         r"\bmobile\s+plant\b|\bforklifts?\b|\bexcavators?\b|\bcranes?\b|\bloaders?\b|\bbobcats?\b|\btelehandlers?\b",
         3),
        ("EXCAVATION", r"\bexcavations?\b|\btrench(?:es|ing)?\b", 3),
        ("DEMOLITION", r"\bdemolition\b", 3),
        ("HAZARDOUS_MATERIALS",
         r"\basbestos\b|\bhazardous\s+(?:materials?|substances?|chemicals?)\b|\bdangerous\s+goods\b",
         3),
        ("SCAFFOLDING", r"\bscaffold(?:s|ing)?\b", 2),
        ("RIGGING", r"\brigging\b|\bdogging\b|\blifting\s+(?:gear|operations?)\b|\bslings?\b", 2),
    )
)

FATAL_FIVE_FAMILIES: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (name, re.compile(pattern, re.IGNORECASE))
    for name, pattern in (
        ("MOBILE_PLANT",
         r"\bmobile\s+plant\b|\bforklifts?\b|\bvehicles?\b|\btrucks?\b|\bexcavators?\b|\bcranes?\b"),
        ("FALLS",
         r"\bfalls?\s+from\s+heights?\b|\bwork(?:ing)?\s+at\s+heights?\b|\bfall\s+(?:hazard|risk|protection|arrest)\b|\bladders?\b|\bscaffold"),
        ("ELECTRICAL", r"\belectric(?:al|ity)?\b|\blive\s+wires?\b|\bhigh\s+voltage\b"),
        ("HAZARDOUS_ATMOSPHERE",
         r"\bh2s\b|\bhydrogen\s+sulph?ide\b|\btoxic\s+gas\b|\bfumes\b|\bchemicals?\b|\bhazardous\s+(?:atmospheres?|substances?)\b|\basbestos\b"),
        ("MANUAL_HANDLING", r"\bmanual\s+handling\b|\bheavy\s+lifting\b|\blifting\s+heavy\b"),
    )
)

_HAZARD_VOCAB = re.compile(r"\b(?:hazards?|risks?|danger(?:s|ous)?)\b", re.IGNORECASE)
_EMERGENCY_VOCAB = re.compile(
    r"\b(?:emergency|emergencies|incidents?|evacuation|first\s+aid)\b", re.IGNORECASE,
)
_CONTROL_VOCAB = re.compile(
    r"\b(?:controls?|controlled|mitigation|mitigate[sd]?)\b", re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def detect_violations(
    text: str, rules: tuple[ViolationRule, ...] = VIOLATION_RULES,
) -> list[ViolationRule]:
    """Rules that fire on `text`, in table order, each at most once."""
    if not text:
        return []
    return [rule for rule in rules if rule.fires(text)]


def detect_hazards(text: str) -> list[FlaggedIssue]:
    """Hazard records for every fired rule."""
    return [rule.to_issue() for rule in detect_violations(text)]


def merge_rule_hazards(
    existing: list[FlaggedIssue], detected: list[FlaggedIssue],
) -> list[FlaggedIssue]:
    """
    Prepend rule hazards to `existing`.

    Existing issues that carry a rule_id the detector produced again are
    dropped, so merging the same text twice yields the same list.
    """
    detected_ids = {issue.rule_id for issue in detected}
    kept = [issue for issue in existing if issue.rule_id not in detected_ids]
    return [*detected, *kept]


def match_hrw(text: str) -> list[tuple[str, int]]:
    return [(name, weight) for name, pattern, weight in HRW_FAMILIES if pattern.search(text)]


def match_fatal_five(text: str) -> list[str]:
    return [name for name, pattern in FATAL_FIVE_FAMILIES if pattern.search(text)]


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def clamp_score(score: float | int, upper: int = MAX_SCORE) -> int:
    return max(MIN_SCORE, min(upper, int(round(score))))


def heuristic_base_score(text: str) -> int:
    """
    Seed score from gross text signals, in [1, 6].

    One point each for: more than 1000 characters, hazard vocabulary,
    emergency vocabulary, control vocabulary.
    """
    signals = (
        len(text) > 1000,
        bool(_HAZARD_VOCAB.search(text)),
        bool(_EMERGENCY_VOCAB.search(text)),
        bool(_CONTROL_VOCAB.search(text)),
    )
    return clamp_score(sum(signals), upper=MAX_BASE_SCORE)


def risk_level_for_score(score: int) -> str:
    if score <= 3:
        return "LOW"
    if score <= 6:
        return "MEDIUM"
    if score <= 8:
        return "HIGH"
    return "CRITICAL"


def requires_supervisor_review(
    score: int,
    flagged_issues: list[FlaggedIssue],
    form_completeness: str,
    compliance_issues: list[ComplianceIssue],
) -> bool:
    return (
        score >= 7
        or any(issue.severity == "CRITICAL" for issue in flagged_issues)
        or (form_completeness == "INCOMPLETE" and score >= 5)
        or any(c.severity in ("HIGH", "CRITICAL") for c in compliance_issues)
    )


def compute_escalation(
    text: str,
    flagged_issues: list[FlaggedIssue],
    fired: list[ViolationRule],
    base_score: int | None = None,
    provider_score: int | None = None,
) -> EscalationDetail:
    """Derive every escalation component for an already-merged issue list."""
    base = clamp_score(base_score) if base_score is not None else heuristic_base_score(text)

    hrw = match_hrw(text)
    fatal_five = match_fatal_five(text)
    critical_uncontrolled = sum(
        1
        for issue in flagged_issues
        if issue.severity == "CRITICAL" and issue.is_controlled is not True
    )

    return EscalationDetail(
        base_score=base,
        provider_score=provider_score,
        hrw_escalation=max((weight for _, weight in hrw), default=0),
        fatal_five_escalation=1 if fatal_five else 0,
        critical_hazard_escalation=critical_uncontrolled,
        checkbox_escalation=sum(rule.weight for rule in fired),
        matched_hrw_categories=[name for name, _ in hrw],
        matched_fatal_five=fatal_five,
        matched_rules=[rule.rule_id for rule in fired],
    )


def apply_escalation(
    analysis: AnalysisResult,
    text: str,
    base_score: int | None = None,
    provider_score: int | None = None,
) -> AnalysisResult:
    """
    Run detection on `text` and re-derive score, level and review flag.

    Returns a new AnalysisResult; the input is not modified.
    """
    fired = detect_violations(text)
    issues = merge_rule_hazards(
        analysis.flagged_issues, [rule.to_issue() for rule in fired],
    )
    escalation = compute_escalation(
        text, issues, fired, base_score=base_score, provider_score=provider_score,
    )
    score = clamp_score(escalation.base_score + escalation.total_escalation)

    # Surface matched HRW families the provider did not already list
    known = {factor.category.upper() for factor in analysis.hrw_factors}
    hrw_factors = list(analysis.hrw_factors)
    for name, weight in match_hrw(text):
        if name not in known:
            hrw_factors.append(
                HRWFactor(
                    category=name,
                    description=name.replace("_", " ").lower(),
                    escalation_weight=weight,
                )
            )

    if fired:
        logger.info(
            "Checkbox violations detected: %s (+%d)",
            escalation.matched_rules, escalation.checkbox_escalation,
        )

    return analysis.model_copy(
        update={
            "flagged_issues": issues,
            "hrw_factors": hrw_factors,
            "risk_score": score,
            "risk_level": risk_level_for_score(score),
            "requires_supervisor_review": requires_supervisor_review(
                score, issues, analysis.form_completeness, analysis.compliance_issues,
            ),
            "escalation": escalation,
        }
    )
