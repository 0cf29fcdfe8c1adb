"""Regex patterns and keyword tables for importance scoring and extraction.

Kept in a standalone module so the metadata store, key-fact store and
extractive summarizer can share them without importing each other.
"""

# Importance heuristic markers: (pattern, bonus)
DECISION_MARKERS: list[str] = [
    r"\bdecid(?:e|ed|ing)\b",
    r"\bcommit(?:ted)?\b",
    r"\bagree(?:d)?\b",
    r"\bpromise(?:d)?\b",
    r"\bwill do\b",
    r"\blet'?s\b",
]

EMPHASIS_MARKERS: list[str] = [
    r"\bimportant\b",
    r"\bcritical\b",
    r"\burgent\b",
    r"\bremember\b",
    r"\bnote\b",
]

PREFERENCE_MARKERS: list[str] = [
    r"\bprefer(?:s|red)?\b",
    r"\bi (?:really )?like\b",
    r"\bi (?:want|need)\b",
]

# Key-fact extraction: (fact type, pattern capturing the fact body)
FACT_EXTRACTION_PATTERNS: list[tuple[str, str]] = [
    ("fact", r"\b(?:please )?remember that\s+(?P<body>[^.!?\n]{3,200})"),
    ("fact", r"\b(?:note|keep in mind) that\s+(?P<body>[^.!?\n]{3,200})"),
    ("preference", r"\bi(?: would|'d) rather\s+(?P<body>[^.!?\n]{3,200})"),
    ("preference", r"\bi prefer\s+(?P<body>[^.!?\n]{3,200})"),
    ("decision", r"\bwe(?:'ve| have)? decided (?:to|that|on)\s+(?P<body>[^.!?\n]{3,200})"),
    ("decision", r"\blet'?s go with\s+(?P<body>[^.!?\n]{3,200})"),
    ("goal", r"\bmy goal is (?:to\s+)?(?P<body>[^.!?\n]{3,200})"),
    ("goal", r"\bi(?:'m| am) trying to\s+(?P<body>[^.!?\n]{3,200})"),
]

# Entity extraction
PROPER_NOUN_PATTERN = r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b"
ACRONYM_PATTERN = r"\b[A-Z]{2,6}\b"
MONEY_PATTERN = r"[$€£]\s?\d+(?:[.,]\d+)*(?:\s?(?:k|m|bn|million|billion))?"
NUMBER_PATTERN = r"\b\d+(?:[.,]\d+)*%?"
DATE_PATTERN = r"\b\d{4}-\d{2}-\d{2}\b|\b\d{1,2}/\d{1,2}/\d{2,4}\b"

# Sentence-initial words that match PROPER_NOUN_PATTERN but are not entities
ENTITY_STOPWORDS: frozenset[str] = frozenset({
    "I", "The", "A", "An", "And", "But", "Or", "So", "If", "When", "What",
    "Why", "How", "Where", "Who", "Which", "This", "That", "These", "Those",
    "It", "We", "You", "They", "He", "She", "Yes", "No", "Ok", "Okay",
    "Please", "Thanks", "Thank", "Sure", "Hi", "Hello", "Let", "Can",
    "Could", "Would", "Should", "Will", "Do", "Does", "Did", "Is", "Are",
    "My", "Our", "Your", "Also", "Then", "Now", "Here", "There",
})

TOPIC_KEYWORDS: dict[str, list[str]] = {
    "technology": ["software", "computer", "programming", "code", "algorithm", "data", "api", "database"],
    "business": ["company", "market", "sales", "revenue", "profit", "customer", "budget", "contract"],
    "health": ["doctor", "medicine", "treatment", "symptom", "health", "medical", "diet", "exercise"],
    "education": ["school", "student", "teacher", "learning", "study", "course", "exam"],
    "travel": ["trip", "vacation", "hotel", "flight", "destination", "travel", "itinerary"],
    "finance": ["invest", "loan", "mortgage", "tax", "savings", "bank", "stock"],
}

# Extractive summarization
KEY_SENTENCE_WORDS: list[str] = [
    "important", "key", "main", "primary", "essential", "critical", "remember", "note",
]

DECISION_SENTENCE_PATTERNS: list[str] = [
    r"\b(?:decided|agreed|concluded|determined) (?:to|that|on)\b",
    r"\b(?:will|going to|plan to|intend to)\b",
]
