from typing import AsyncIterator, Dict, List, Optional

import google.generativeai as genai
from groq import AsyncGroq

from cobra_chat.prompts.templates import BASE_SYSTEM_PROMPT
from cobra_chat.utils.errors import ConfigurationError, GenerationError
from cobra_chat.utils.logger import logger

# History items look like {"role": "user" | "model", "text": "..."}
History = List[Dict[str, str]]


def to_gemini_history(history: History) -> List[Dict]:
    return [{"role": item["role"], "parts": [item["text"]]} for item in history]


def to_openai_messages(history: History, prompt: str) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": BASE_SYSTEM_PROMPT}]
    for item in history:
        role = "assistant" if item["role"] == "model" else "user"
        messages.append({"role": role, "content": item["text"]})
    messages.append({"role": "user", "content": prompt})
    return messages


class GeminiChatGenerator:
    """Streams chat answers from Gemini."""
    name = "gemini"

    def __init__(self, api_key: str, model_name: str = "gemini-2.5-flash"):
        if not api_key:
            raise ConfigurationError("Gemini API key not configured.")
        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(model_name, system_instruction=BASE_SYSTEM_PROMPT)

    async def stream(self, history: History, prompt: str) -> AsyncIterator[str]:
        chat = self.model.start_chat(history=to_gemini_history(history))
        response = await chat.send_message_async(prompt, stream=True)
        async for chunk in response:
            try:
                text = chunk.text
            except ValueError:
                # Chunk without text parts (e.g. a safety stop)
                continue
            if text:
                yield text


class GroqChatGenerator:
    """Streams chat answers from Groq (Llama), used when Gemini is down."""
    name = "groq"

    def __init__(self, api_key: str, model_name: str = "llama-3.3-70b-versatile"):
        if not api_key:
            raise ConfigurationError("Groq API key not configured.")
        self.client = AsyncGroq(api_key=api_key)
        self.model_name = model_name

    async def stream(self, history: History, prompt: str) -> AsyncIterator[str]:
        stream = await self.client.chat.completions.create(
            messages=to_openai_messages(history, prompt),
            model=self.model_name,
            temperature=0.3,
            max_tokens=2000,
            stream=True,
        )
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta


class LLMService:
    """
    Runs a chat turn with the best available provider.
    The fallback only takes over when the primary fails before producing any
    text; once fragments have been yielded a failure is final, so an answer
    never mixes two models.
    """

    def __init__(self, primary, fallback=None):
        if primary is None:
            raise ConfigurationError("A primary generation provider is required.")
        self.primary = primary
        self.fallback = fallback

    @property
    def providers(self) -> List:
        return [p for p in (self.primary, self.fallback) if p is not None]

    async def stream_reply(self, history: History, prompt: str) -> AsyncIterator[str]:
        providers = self.providers
        for position, provider in enumerate(providers):
            started = False
            try:
                async for fragment in provider.stream(history, prompt):
                    started = True
                    yield fragment
                return
            except Exception as e:
                is_last = position == len(providers) - 1
                if started or is_last:
                    logger.error(f"{provider.name} generation failed: {str(e)}")
                    raise GenerationError(f"{provider.name} generation failed: {str(e)}") from e
                logger.error(f"{provider.name} failed: {str(e)}. Falling back to {providers[position + 1].name}.")

    async def generate_reply(self, history: History, prompt: str) -> str:
        """Accumulates the full streamed answer."""
        fragments = []
        async for fragment in self.stream_reply(history, prompt):
            fragments.append(fragment)
        return "".join(fragments)


def build_llm_service(gemini_key: str, gemini_model: str, groq_key: Optional[str] = None, groq_model: Optional[str] = None) -> LLMService:
    primary = GeminiChatGenerator(gemini_key, gemini_model)
    fallback = None
    if groq_key:
        fallback = GroqChatGenerator(groq_key, groq_model or "llama-3.3-70b-versatile")
    logger.info(f"Generation providers: {primary.name}" + (f" -> {fallback.name}" if fallback else ""))
    return LLMService(primary, fallback)
