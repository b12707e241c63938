# cobra_chat/prompts/templates.py

# System Instructions
BASE_SYSTEM_PROMPT = """You are Cobra AI, an intelligent and encouraging study assistant for university students.
Explain concepts clearly, step by step when useful, and keep answers focused on the question.
When institutional guidelines are provided, follow them and prefer them over general knowledge.
Never invent facts about an uploaded document that are not in its text."""

FILE_CONTEXT_PROMPT = """I have uploaded a document titled "{file_name}". Here is the content:

{file_content}

Based on this document, {message}"""

GUIDELINES_PROMPT = """Relevant guidelines (use them if they apply to the question):
{guidelines}

{prompt}"""

GUIDELINE_ITEM = "- {title} [{category}]: {content}"

DEFAULT_DOCUMENT_QUESTION = "Please analyze this document and tell me what it's about."


def build_prompt(message: str, file_context=None, guidelines=None) -> str:
    """Assembles the final prompt: optional document text, then optional guidelines."""
    prompt = message
    if file_context is not None:
        prompt = FILE_CONTEXT_PROMPT.format(
            file_name=file_context.name,
            file_content=file_context.content,
            message=message,
        )

    if guidelines:
        items = "\n".join(
            GUIDELINE_ITEM.format(
                title=match.document.title,
                category=match.document.category or "general",
                content=match.document.content,
            )
            for match in guidelines
        )
        prompt = GUIDELINES_PROMPT.format(guidelines=items, prompt=prompt)

    return prompt
