"""
Constants for the content pipeline.
"""

from pathlib import Path

MODULE_ROOT = Path(__file__).parent

PROMPTS_DIR = MODULE_ROOT / "prompts"

DATA_DIR = MODULE_ROOT / "data"

DB_NAME = "content_pipeline.db"

# Bumped whenever a topic is added or retired; identifiers never change meaning
TOPIC_VOCABULARY_VERSION = 1

# Default topic vocabulary: (id, display name, description)
DEFAULT_TOPICS = [
    ("ai-ml", "AI/ML", "Artificial Intelligence and Machine Learning technologies, frameworks, and applications"),
    ("product", "Product", "Product management, strategy, development lifecycle, and user experience"),
    ("design", "Design", "User interface design, user experience, design systems, and visual design"),
    ("engineering", "Engineering", "Software engineering practices, architecture, development methodologies"),
    ("business", "Business", "Business strategy, operations, management, and organizational development"),
    ("marketing", "Marketing", "Digital marketing, growth strategies, brand development, and customer acquisition"),
    ("mobile-dev", "Mobile Dev", "Mobile application development for iOS, Android, and cross-platform solutions"),
    ("devops", "DevOps", "Development operations, CI/CD, infrastructure, and deployment practices"),
    ("security", "Security", "Cybersecurity, application security, data protection, and privacy"),
    ("data-science", "Data Science", "Data analysis, statistics, data visualization, and business intelligence"),
    ("startups", "Startups", "Entrepreneurship, startup culture, venture capital, and scaling businesses"),
    ("leadership", "Leadership", "Management skills, team leadership, organizational culture, and professional development"),
]

# Keyword rules for the heuristic classifier: topic id -> (confidence, keywords)
TOPIC_KEYWORDS = {
    "ai-ml": (0.9, ["artificial intelligence", "machine learning", "ai", "llm", "chatgpt", "neural", "deep learning", "gpt"]),
    "product": (0.8, ["product manager", "product", "roadmap", "pm"]),
    "design": (0.8, ["user interface", "design", "ui", "ux", "figma", "typography"]),
    "engineering": (0.8, ["engineering", "developer", "programming", "code", "software", "python", "javascript"]),
    "business": (0.7, ["business", "revenue", "enterprise", "company", "market share"]),
    "marketing": (0.7, ["marketing", "growth", "advertising", "seo", "brand"]),
    "mobile-dev": (0.8, ["mobile", "ios", "android", "app store", "swift", "kotlin"]),
    "devops": (0.8, ["devops", "deployment", "infrastructure", "kubernetes", "docker", "ci/cd"]),
    "security": (0.8, ["security", "cybersecurity", "privacy", "vulnerability", "breach", "malware"]),
    "data-science": (0.7, ["data science", "data", "analytics", "statistics", "visualization"]),
    "startups": (0.7, ["startup", "entrepreneur", "venture capital", "founder", "seed round"]),
    "leadership": (0.7, ["leadership", "management", "team", "culture", "hiring"]),
}

# Topic used when no keyword rule matches
DEFAULT_FALLBACK_TOPIC = "business"

# Gemini text-embedding-004 dimensionality
EMBEDDING_DIMENSIONS = 768

# Appended when an excerpt had to be cut
ELLIPSIS_MARKER = "..."

# Text passed to the classifier is truncated to this many characters
MAX_CLASSIFICATION_TEXT_LENGTH = 2000

# Query parameters stripped when canonicalising URLs
TRACKING_QUERY_PARAMS = {"fbclid", "gclid", "mc_cid", "mc_eid", "ref"}
TRACKING_QUERY_PREFIXES = ("utm_",)

SECONDS_PER_DAY = 24 * 60 * 60
