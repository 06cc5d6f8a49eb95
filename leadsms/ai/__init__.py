"""OpenAI-backed collaborators: intent classification and the conversational assistant."""
