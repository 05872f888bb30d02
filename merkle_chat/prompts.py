"""
System prompt construction and query classification.
"""
from enum import Enum
from typing import Callable, Optional


class QueryKind(str, Enum):
    DOMAIN_ONLY = "domain_only"
    DOMAIN_PLUS_CONTEXT = "domain_plus_context"


Classifier = Callable[[str], QueryKind]

CODE_KEYWORDS = (
    "component", "function", "code", "implement", "fix", "error", "bug",
    "react", "typescript", "redux", "state", "props", "hook", "css",
    "style", "ui", "interface", "class", "method", "variable", "import",
    "export", "jsx", "tsx", "file", "folder", "structure", "architecture",
    "debug", "refactor", "optimize", "performance", "build", "deploy",
)


def classify_query(text: str) -> QueryKind:
    """Keyword classifier: code questions get project context attached."""
    lowered = text.lower()
    if any(keyword in lowered for keyword in CODE_KEYWORDS):
        return QueryKind.DOMAIN_PLUS_CONTEXT
    return QueryKind.DOMAIN_ONLY


DOMAIN_PROMPT = (
    "You are a knowledgeable blockchain and cryptocurrency expert assistant. "
    "You provide accurate, helpful, and educational information about:\n\n"
    "- Blockchain technology and its applications\n"
    "- Cryptocurrencies (Bitcoin, Ethereum, altcoins)\n"
    "- DeFi (Decentralized Finance) protocols and concepts\n"
    "- NFTs (Non-Fungible Tokens) and digital assets\n"
    "- Smart contracts and dApps\n"
    "- Trading strategies and market analysis\n"
    "- Security best practices and wallet management\n"
    "- Regulatory developments and compliance"
)

FORMAT_PROMPT = (
    "Format your responses with:\n"
    "- Clear headings using # and ##\n"
    "- Code blocks with ``` for technical examples\n"
    "- Bullet points and numbered lists for clarity\n"
    "- **Bold** text for emphasis\n"
    "- > Blockquotes for important warnings or tips\n\n"
    "Always provide accurate, up-to-date information and include relevant "
    "warnings about risks when discussing investments or trading."
)


def build_system_prompt(kind: QueryKind, project_context: Optional[str] = None) -> str:
    sections = [DOMAIN_PROMPT]
    if kind == QueryKind.DOMAIN_PLUS_CONTEXT and project_context:
        sections.append(
            "## Current Codebase Context:\n"
            f"{project_context.strip()}\n\n"
            "When users ask about code or implementation details, reference "
            "this project structure in your answer."
        )
    sections.append(FORMAT_PROMPT)
    return "\n\n".join(sections)
