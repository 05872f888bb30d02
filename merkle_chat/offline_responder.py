"""
Deterministic stand-in for the completion service.

Used when no API key is configured or the offline switch is on, so the
service stays usable without network access or live credentials.
"""
import asyncio
import logging
from typing import Awaitable, Callable

from merkle_chat.prompts import Classifier, QueryKind, classify_query

logger = logging.getLogger(__name__)

TOPIC_RESPONSES = [
    (
        ("blockchain", "distributed ledger"),
        "# Blockchain Technology Overview\n\n"
        "**Blockchain** is a distributed ledger that keeps a growing list of "
        "records, called blocks, linked and secured with cryptography.\n\n"
        "## Key Features:\n"
        "- **Decentralization**: No single point of control\n"
        "- **Immutability**: Records cannot be altered once confirmed\n"
        "- **Transparency**: Transactions are publicly visible\n"
        "- **Consensus**: The network agrees on transaction validity",
    ),
    (
        ("cryptocurrency", "bitcoin", "ethereum"),
        "# Cryptocurrency Fundamentals\n\n"
        "**Cryptocurrency** is a digital currency secured by cryptography "
        "that operates independently of traditional banks.\n\n"
        "> **Wallet**: Software that stores your private keys\n\n"
        "Never share your private keys and use hardware wallets for large amounts.",
    ),
    (
        ("defi", "decentralized finance", "lending"),
        "# Decentralized Finance (DeFi)\n\n"
        "**DeFi** refers to financial services built on blockchains that "
        "operate without intermediaries such as banks.\n\n"
        "## Risks:\n"
        "- Smart contract vulnerabilities\n"
        "- Regulatory uncertainty\n"
        "- Impermanent loss in liquidity pools",
    ),
    (
        ("nft", "non-fungible"),
        "# Non-Fungible Tokens (NFTs)\n\n"
        "**NFTs** are unique digital assets whose ownership is recorded on a "
        "blockchain. Common standards are **ERC-721** and **ERC-1155**.",
    ),
]

CODE_RESPONSE = (
    "# Code Assistance\n\n"
    "Thank you for your code-related question: \"{message}\"\n\n"
    "Please share the component or file you are working on and what you "
    "expect it to do, and I will walk through the implementation with you."
)

DEFAULT_RESPONSE = (
    "# Blockchain & Cryptocurrency Information\n\n"
    "Thank you for your question: \"{message}\"\n\n"
    "## Topics I can help with:\n"
    "- **Blockchain fundamentals** and how it works\n"
    "- **Cryptocurrency** basics and trading\n"
    "- **DeFi protocols** and yield farming\n"
    "- **NFTs** and digital collectibles\n\n"
    "> Always do your own research (DYOR) before making investment decisions."
)


class OfflineResponder:

    def __init__(
        self,
        delay_ms: int = 1500,
        classifier: Classifier = classify_query,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.delay_ms = delay_ms
        self._classify = classifier
        self._sleep = sleep

    def compose(self, message: str) -> str:
        """Pick the canned reply for `message` without waiting."""
        if self._classify(message) == QueryKind.DOMAIN_PLUS_CONTEXT:
            return CODE_RESPONSE.format(message=message)

        lowered = message.lower()
        for keywords, response in TOPIC_RESPONSES:
            if any(keyword in lowered for keyword in keywords):
                return response
        return DEFAULT_RESPONSE.format(message=message)

    async def respond(self, message: str) -> str:
        logger.debug("Offline responder answering after %dms", self.delay_ms)
        if self.delay_ms > 0:
            await self._sleep(self.delay_ms / 1000)
        return self.compose(message)
