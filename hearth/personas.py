"""
Built-in personas and system prompt resolution.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Persona:
    name: str
    description: str
    system_prompt: str


PERSONAS: dict[str, Persona] = {
    "default": Persona(
        name="General Assistant",
        description="Helpful and concise assistant (default)",
        system_prompt="You are a helpful AI assistant. Answer concisely and accurately.",
    ),
    "coder": Persona(
        name="Software Engineer",
        description="Expert developer, focuses on code quality and patterns",
        system_prompt=(
            "You are an expert software engineer. Focus on clean code, best "
            "practices, and efficient algorithms. Provide code blocks for solutions."
        ),
    ),
    "translator": Persona(
        name="Translator",
        description="Professional translator",
        system_prompt=(
            "You are a professional translator. Translate the user's input "
            "faithfully and keep the original nuance and tone."
        ),
    ),
    "writer": Persona(
        name="Creative Writer",
        description="Creative writing aide for blogs and stories",
        system_prompt=(
            "You are a creative writer. Help draft engaging content, refine "
            "tone, and improve clarity."
        ),
    ),
    "analyst": Persona(
        name="Data Analyst",
        description="Breaks down complex problems step by step",
        system_prompt=(
            "You are a data analyst. Approach problems logically, break complex "
            "issues into smaller steps, and focus on facts and data."
        ),
    ),
}


def effective_system_prompt(custom_prompt: str | None, persona_key: str | None) -> str:
    """Tenant override first, then the persona, then the default persona."""
    if custom_prompt:
        return custom_prompt
    if persona_key and persona_key in PERSONAS:
        return PERSONAS[persona_key].system_prompt
    return PERSONAS["default"].system_prompt
