"""
Query Expander - alternate phrasings of a search query from development synonyms.

Each variant differs from the original by exactly one substituted word.
Expansion is off unless CONVO_RECALL_QUERY_EXPANSION=true.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .config import settings

DOMAIN_SYNONYMS: Dict[str, List[str]] = {
    # Errors and bugs
    "error": ["bug", "issue", "problem", "exception", "failure"],
    "bug": ["error", "issue", "defect", "problem"],
    "issue": ["problem", "bug", "error", "concern"],
    "exception": ["error", "crash", "failure", "thrown"],
    "crash": ["exception", "failure", "error", "abort"],

    # API and endpoints
    "api": ["endpoint", "interface", "service", "route"],
    "endpoint": ["api", "route", "path", "url"],
    "route": ["endpoint", "path", "url", "api"],

    # Functions and methods
    "function": ["method", "procedure", "routine", "handler"],
    "method": ["function", "procedure", "operation"],
    "handler": ["callback", "listener", "function"],
    "callback": ["handler", "listener", "hook"],

    # Data structures
    "array": ["list", "collection", "sequence"],
    "list": ["array", "collection", "items"],
    "object": ["instance", "entity", "record"],
    "map": ["dictionary", "hash", "hashmap"],
    "dictionary": ["map", "hash", "object"],

    # Database
    "database": ["db", "datastore", "storage"],
    "query": ["search", "lookup", "fetch", "retrieve"],
    "schema": ["structure", "model", "definition"],
    "migration": ["upgrade", "change", "update"],

    # UI
    "component": ["widget", "element", "module"],
    "button": ["btn", "control", "action"],
    "modal": ["dialog", "popup", "overlay"],
    "form": ["input", "fields", "submission"],

    # Testing
    "test": ["spec", "check", "verify", "validate"],
    "unit test": ["spec", "test case"],
    "mock": ["stub", "fake", "double"],

    # Configuration
    "config": ["configuration", "settings", "options"],
    "settings": ["config", "preferences", "options"],
    "option": ["setting", "parameter", "flag"],

    # Authentication
    "auth": ["authentication", "login", "authorization"],
    "authentication": ["auth", "login", "signin"],
    "authorization": ["auth", "permissions", "access"],
    "login": ["signin", "authenticate", "auth"],

    # Security
    "password": ["credential", "secret", "passphrase"],
    "token": ["jwt", "key", "credential"],
    "encryption": ["crypto", "cipher", "encrypt"],

    # Performance
    "performance": ["speed", "optimization", "efficiency"],
    "optimize": ["improve", "enhance", "speed up"],
    "cache": ["memoize", "store", "buffer"],

    # State management
    "state": ["data", "store", "context"],
    "store": ["state", "repository", "cache"],

    # Files
    "file": ["document", "asset", "resource"],
    "upload": ["import", "submit", "send"],
    "download": ["export", "fetch", "retrieve"],

    # Misc development terms
    "deploy": ["release", "publish", "ship"],
    "build": ["compile", "bundle", "package"],
    "install": ["setup", "configure", "add"],
    "dependency": ["package", "module", "library"],
    "refactor": ["restructure", "rewrite", "improve"],
}


def _union(existing: Iterable[str], extra: Iterable[str]) -> List[str]:
    """Ordered union without duplicates."""
    return list(dict.fromkeys([*existing, *extra]))


@dataclass
class QueryExpansionConfig:
    enabled: bool = False
    max_variants: int = 3
    custom_synonyms: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def from_settings(cls) -> "QueryExpansionConfig":
        return cls(enabled=settings.query_expansion, max_variants=settings.max_query_variants)


class QueryExpander:
    """
    Generates up to max_variants distinct query strings.

    The original query is always the first variant. Further variants replace
    a single word with one of its synonyms, word by word, in query order.
    """

    def __init__(self, config: Optional[QueryExpansionConfig] = None):
        self.config = config or QueryExpansionConfig.from_settings()

        self.synonyms: Dict[str, List[str]] = {k: list(v) for k, v in DOMAIN_SYNONYMS.items()}
        for word, values in self.config.custom_synonyms.items():
            self.add_synonyms(word, values)

    def expand(self, query: str) -> List[str]:
        if not self.config.enabled:
            return [query]

        limit = self.config.max_variants
        variants = [query]
        words = query.lower().split()

        for index, word in enumerate(words):
            if len(variants) >= limit:
                break
            for synonym in self.synonyms.get(word, []):
                if len(variants) >= limit:
                    break
                candidate = " ".join(words[:index] + [synonym] + words[index + 1:])
                if candidate not in variants:
                    variants.append(candidate)

        return variants[:limit]

    def get_synonyms(self, word: str) -> List[str]:
        return list(self.synonyms.get(word.lower(), []))

    def has_synonyms(self, word: str) -> bool:
        return word.lower() in self.synonyms

    def add_synonyms(self, word: str, synonyms: Iterable[str]) -> None:
        """Merge extra synonyms into the table (case-insensitive key)."""
        key = word.lower()
        self.synonyms[key] = _union(self.synonyms.get(key, []), synonyms)
