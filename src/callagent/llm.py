"""
Chat-completion client and conversation transcript.

Provides:
- Startup model validation
- An OpenAI-compatible streaming client (OpenAI or Groq)
- The append-only transcript resent on every completion request
- The agent's system prompt
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import structlog
from openai import AsyncOpenAI

from src.callagent.config import get_config

logger = structlog.get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"


@dataclass
class Turn:
    """A single turn in the conversation."""
    role: str  # "system" | "user" | "assistant" | "function"
    content: str
    name: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, str]:
        message = {"role": self.role, "content": self.content}
        if self.name:
            message["name"] = self.name
        return message


class Transcript:
    """Ordered, append-only turn log. Never trimmed: the whole call is context."""

    def __init__(self, turns: Optional[List[Turn]] = None):
        self._turns: List[Turn] = list(turns or [])

    def append(self, role: str, content: str, name: Optional[str] = None) -> Turn:
        turn = Turn(role=role, content=content, name=name)
        self._turns.append(turn)
        return turn

    @property
    def turns(self) -> List[Turn]:
        return list(self._turns)

    @property
    def last(self) -> Optional[Turn]:
        return self._turns[-1] if self._turns else None

    def to_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format."""
        return [turn.to_message() for turn in self._turns]

    def __len__(self) -> int:
        return len(self._turns)


def get_system_prompt(config: Optional[Any] = None) -> str:
    """
    Get the system prompt for the call agent.

    This defines the agent's persona, the call script and the service facts it
    may quote.
    """
    if config is None:
        config = get_config()

    return f"""You are {config.agent_name}, a cordial call agent at {config.company_name}, a lead generation agency.
Your role is to guide callers in setting up a callback with one of our experts to address
their lead generation needs.

Follow this script a step at a time, never asking more than one question at a time:

1. Introduce yourself and ask the caller about the type of leads they are interested in.
2a. Inquire about their target regions for lead generation.
2b. Confirm their lead requirements and prompt for any additional details.
Gracefully transition to the next step if not successful or after a few failed attempts.
3. Prompt them to set up a callback with an expert to discuss their campaign in detail.
3a. If they refuse, ask if they have any questions or need further information.
4. If they are interested in a callback, request their preferred date and time.
"Asap" is a valid response.
5. Confirm their phone number, or ask for it if not yet provided.
6. Answer questions about our services and pricing only if prompted by the caller.
7. For unrelated or repeated questions, kindly suggest that these can be more thoroughly addressed during the callback.
8. Conclude the call by thanking the caller and restating the callback details for confirmation.
Remind them that they will receive a text confirmation to their phone.

GENERAL GUIDELINES:
- You have a cheerful, professional, and patient personality.
- Keep your responses as brief as possible but make every attempt to keep the caller on the phone without being rude.
- Never respond with more than a single question or prompt at a time.
- If possible, use shorthand for geographic places, provinces, etc. Example: BC for British Columbia.
- Confirm understanding by repeating key details back to the caller.
- If a request is ambiguous or does not match the context, ask for clarification (e.g., "Sorry I didn't catch that...").
- Don't make assumptions about what values to plug into functions.

SERVICE CONTEXT (use only for service-related questions):
We run Google Search ads to direct potential clients to a dedicated phone line, enabling immediate engagement.
Our pricing model is "Pay per Lead" at $10 per callback lead, with a one-time setup fee of $399 covering account
and phone setup and lifetime management of their Google Ads, without hidden or monthly fees.
Client has full control over their Ads budget, schedule, and volume."""


def get_split_instruction(split_marker: str) -> str:
    return (
        "IMPORTANT:\n"
        f"Add a '{split_marker}' symbol every 5 to 10 words at natural pauses "
        "where your response can be split for text to speech."
    )


def new_transcript(config: Optional[Any] = None) -> Transcript:
    """Initial transcript: prompt, split instruction and the scripted greeting."""
    if config is None:
        config = get_config()

    transcript = Transcript()
    transcript.append("system", get_system_prompt(config))
    transcript.append("system", get_split_instruction(config.split_marker))
    transcript.append("assistant", config.greeting)
    return transcript


def get_base_url(config: Any) -> str:
    return GROQ_BASE_URL if config.llm_provider == "groq" else OPENAI_BASE_URL


def create_llm_client(config: Optional[Any] = None) -> AsyncOpenAI:
    """OpenAI client, pointed at Groq's OpenAI-compatible API when selected."""
    if config is None:
        config = get_config()

    return AsyncOpenAI(api_key=config.llm_api_key, base_url=get_base_url(config))


async def validate_model(config: Optional[Any] = None) -> bool:
    """
    Validate that the configured model exists.

    Calls GET {base_url}/models to check.

    Raises:
        SystemExit: If the model doesn't exist or the API is unreachable (fail fast)
    """
    if config is None:
        config = get_config()

    base_url = get_base_url(config)
    model_name = config.llm_model
    logger.info("Validating LLM model", provider=config.llm_provider, model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {config.llm_api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to LLM API", error=str(e))
            raise SystemExit(
                f"Failed to connect to {config.llm_provider} API: {e}\n"
                "Check your network connection and API key."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch LLM models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate LLM model. API returned status {response.status_code}. "
            "Check your API key."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(i for i in model_ids if i)[:10])
        logger.error(
            "LLM model not found",
            requested_model=model_name,
            available_models=available,
        )
        raise SystemExit(
            f"Model '{model_name}' not found in available models.\n"
            f"Available models include: {available}\n"
            "Please update your .env file."
        )

    logger.info("LLM model validated successfully", model=model_name)
    return True
