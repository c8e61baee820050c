"""Fuzzy matching of page text against form field labels.

Text runs are grouped into phrases, then every field's label synonyms are
compared against every phrase. A phrase is accepted as the field's anchor
when either the normalized edit-distance similarity or the token overlap
reaches ``MATCH_THRESHOLD``.
"""

import logging
import re
from dataclasses import dataclass

from rapidfuzz.distance import Levenshtein

from coordinate_map import LabelAnchor
from form_data import FieldKey, FormType

logger = logging.getLogger(__name__)

MATCH_THRESHOLD = 0.6
REFERENCE_MATCH_THRESHOLD = 0.8

# Phrase grouping tolerances (points)
PHRASE_MAX_GAP_X = 20.0
PHRASE_MAX_DY = 5.0


@dataclass
class TextRun:
    """A run of text in PDF points, bottom-left origin."""

    text: str
    x: float
    y: float
    width: float
    height: float

    def to_dict(self):
        return {"text": self.text, "x": round(self.x, 2), "y": round(self.y, 2),
                "width": round(self.width, 2), "height": round(self.height, 2)}


# ---------------------------------------------------------------------------
# Label dictionaries
# ---------------------------------------------------------------------------

_COMMON_LABELS = {
    FieldKey.NAME: ["Name of the Assessee", "Name", "Name of Assessee", "Assessee Name", "Full Name"],
    FieldKey.PAN: ["PAN", "Permanent Account Number", "PAN No", "PAN Number", "P.A.N."],
    FieldKey.PREVIOUS_YEAR: ["Previous Year", "P.Y.", "Prev. Year", "Financial Year"],
    FieldKey.ASSESSMENT_YEAR: ["Assessment Year", "A.Y.", "Year of Assessment", "Assess. Year"],
    FieldKey.RESIDENT_YES: ["Residential Status", "Resident", "Resident Status", "Res. Status"],
    FieldKey.RESIDENT_NO: ["Non-Resident", "Non Resident", "NRI"],
    FieldKey.ASSESSED_YES: ["Yes", "Assessed - Yes", "Assessed Yes"],
    FieldKey.ASSESSED_NO: ["No", "Assessed - No", "Assessed No"],
    FieldKey.LATEST_AY: ["Latest Assessment Year", "Latest AY", "Last AY", "Previous Assessment Year"],
    FieldKey.ESTIMATED_INCOME_CURRENT: ["Estimated Income", "Current Income", "Income Current",
                                        "Current Year Income"],
    FieldKey.ESTIMATED_INCOME_TOTAL: ["Total Income", "Estimated Total", "Total Estimated",
                                      "Total Income Estimated"],
    FieldKey.BOID: ["Identification Number", "ID Number", "BOID", "Beneficiary ID", "Identification No."],
    FieldKey.NATURE_INCOME: ["Nature of Income", "Income Nature", "Type of Income", "Income Type"],
    FieldKey.SECTION: ["Section", "Section No", "Under Section", "Sec.", "Section Number"],
    FieldKey.INCOME_AMOUNT: ["Amount of Income", "Income Amount", "Dividend Amount", "Amount"],
    FieldKey.FORM_COUNT: ["Number of Forms", "Total Forms", "Forms Count", "No. of Forms"],
    FieldKey.FORM_AMOUNT: ["Aggregate Amount", "Total Amount", "Amount Total", "Aggregate Sum"],
    FieldKey.SIGNATURE: ["Signature", "Sign", "Signature of Assessee", "Assessee Signature",
                         "Signature of the Declarant"],
    FieldKey.PLACE_DATE: ["Place", "Date", "Place and Date", "Place/Date"],
    FieldKey.DECLARATION_FY_END: ["FY End", "Year End", "F.Y. End", "Year Ending"],
    FieldKey.DECLARATION_AY: ["Declaration AY", "Relevant Assessment Year", "AY"],
}

FORM_15G_LABELS = {
    **_COMMON_LABELS,
    FieldKey.STATUS_INDIVIDUAL: ["Individual", "Status Individual", "Individual Status", "Ind."],
    FieldKey.STATUS_HUF: ["HUF", "Hindu Undivided Family", "Status HUF", "H.U.F."],
    FieldKey.ADDR_FLAT: ["Flat", "Flat No", "Flat Number", "House No", "Flat/House No.", "Dwelling No."],
    FieldKey.ADDR_PREMISES: ["Premises", "Building", "Premises Name", "Building Name", "Name of Premises"],
    FieldKey.ADDR_STREET: ["Street", "Road", "Street Name", "Road/Street", "Street/Road"],
    FieldKey.ADDR_AREA: ["Area", "Locality", "Area/Locality", "Locality/Area"],
    FieldKey.ADDR_CITY: ["City", "Town", "City/Town", "Town/City"],
    FieldKey.ADDR_STATE: ["State", "State Name", "State/UT"],
    FieldKey.ADDR_PIN: ["PIN", "Pincode", "PIN Code", "Postal Code", "Pin Code"],
    FieldKey.EMAIL: ["Email", "E-mail", "Email ID", "Email Address", "E-mail ID"],
    FieldKey.PHONE: ["Phone", "Mobile", "Phone No", "Mobile No", "Telephone No", "Mobile Number"],
}

FORM_15H_LABELS = {
    **_COMMON_LABELS,
    FieldKey.ADDRESS: ["Address", "Full Address", "Complete Address", "Postal Address"],
}

LABEL_DICTIONARIES = {
    FormType.FORM_15G: FORM_15G_LABELS,
    FormType.FORM_15H: FORM_15H_LABELS,
}


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

_NON_WORD = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")


def normalize_text(text):
    """Lowercase, punctuation to spaces, collapse whitespace."""
    return _SPACES.sub(" ", _NON_WORD.sub(" ", text.lower())).strip()


def levenshtein(a, b):
    return Levenshtein.distance(a, b)


def calculate_similarity(a, b):
    """Normalized edit similarity in [0, 1]; two empty strings are identical."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return (max_len - levenshtein(a, b)) / max_len


def token_overlap(label, phrase):
    """Jaccard overlap of the two token sets."""
    label_tokens = set(label.split())
    phrase_tokens = set(phrase.split())
    union = label_tokens | phrase_tokens
    if not union:
        return 0.0
    return len(label_tokens & phrase_tokens) / len(union)


# ---------------------------------------------------------------------------
# Phrases
# ---------------------------------------------------------------------------

def group_into_phrases(runs):
    """Greedily merge runs that sit on the same line with a small gap.

    Single pass in run order: an unused run joins the current phrase when its
    left edge is within PHRASE_MAX_GAP_X of the phrase's right edge and its
    baseline is within PHRASE_MAX_DY of the phrase's first run.
    """
    phrases = []
    used = set()

    for i, run in enumerate(runs):
        if i in used:
            continue
        used.add(i)
        parts = [run.text]
        min_x, max_x = run.x, run.x + run.width
        min_y, max_y = run.y, run.y + run.height

        for j in range(i + 1, len(runs)):
            if j in used:
                continue
            other = runs[j]
            if abs(other.x - max_x) < PHRASE_MAX_GAP_X and abs(other.y - run.y) < PHRASE_MAX_DY:
                parts.append(other.text)
                min_x = min(min_x, other.x)
                max_x = max(max_x, other.x + other.width)
                min_y = min(min_y, other.y)
                max_y = max(max_y, other.y + other.height)
                used.add(j)

        phrases.append(TextRun(
            text=" ".join(parts), x=min_x, y=min_y,
            width=max_x - min_x, height=max_y - min_y,
        ))

    return phrases


# ---------------------------------------------------------------------------
# Anchor detection
# ---------------------------------------------------------------------------

def _anchor(phrase, confidence):
    return LabelAnchor(
        text=phrase.text, x=phrase.x, y=phrase.y,
        width=phrase.width, height=phrase.height,
        confidence=min(1.0, max(0.0, confidence)),
    )


def detect_label_anchors(phrases, label_dictionary):
    """Best-matching phrase per field; fields with no acceptable match are skipped."""
    normalized = [(phrase, normalize_text(phrase.text)) for phrase in phrases]
    anchors = {}

    for key, synonyms in label_dictionary.items():
        best = None
        best_score = -1.0
        for synonym in synonyms:
            label = normalize_text(synonym)
            for phrase, text in normalized:
                similarity = calculate_similarity(text, label)
                overlap = token_overlap(label, text)
                if similarity < MATCH_THRESHOLD and overlap < MATCH_THRESHOLD:
                    continue
                score = max(similarity, overlap)
                if score > best_score:
                    best, best_score = phrase, score

        if best is None:
            logger.debug("No anchor found for field %s", getattr(key, "value", key))
            continue
        anchors[key] = _anchor(best, best_score)
        logger.debug("Anchor for %s: %r (confidence %.2f)", getattr(key, "value", key), best.text, best_score)

    logger.info("Detected %d/%d label anchors", len(anchors), len(label_dictionary))
    return anchors


def match_reference_anchors(phrases, reference_texts, threshold=REFERENCE_MATCH_THRESHOLD):
    """Find the canonical reference phrases on the page.

    Returns {reference text: LabelAnchor}. Each phrase serves at most one
    reference; references are matched in the order given.
    """
    normalized = [(i, phrase, normalize_text(phrase.text)) for i, phrase in enumerate(phrases)]
    used = set()
    matches = {}

    for reference in reference_texts:
        target = normalize_text(reference)
        best = None
        best_score = threshold
        for i, phrase, text in normalized:
            if i in used:
                continue
            score = calculate_similarity(text, target)
            if score >= best_score and (best is None or score > best_score):
                best, best_score = (i, phrase), score
        if best is None:
            logger.debug("Reference anchor %r not found", reference)
            continue
        used.add(best[0])
        matches[reference] = _anchor(best[1], best_score)

    return matches
