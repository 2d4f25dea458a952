"""Default prompt builder for role steps."""

from __future__ import annotations

from crewflow.schemas.tasks import Role, Subtask, get_capability

ROLE_BRIEFS: dict[str, str] = {
    "architect.brief": (
        "You are the software architect. Analyse the repository and write a short, "
        "concrete implementation plan for the task. Do not edit files. If you are "
        "missing information, ask for it explicitly."
    ),
    "coder.implement": (
        "You are the coder. Implement the task in the working directory following the "
        "architect's plan and any reviewer feedback. When the plan is clear say "
        "'ready to implement'; if something is unclear, ask the architect directly."
    ),
    "reviewer.review": (
        "You are the reviewer. Inspect the changes in the working directory against "
        "the task. Answer 'Approved' if they are correct, otherwise list each issue "
        "that must be fixed."
    ),
    "tester.verify": (
        "You are the tester. Write or run tests that verify the task and report any "
        "failure precisely."
    ),
    "specialist.implement": (
        "You are a domain specialist. Implement the task in the working directory "
        "and explain any domain-specific decisions."
    ),
}

PROTOCOL = """## Communication Protocol

You are part of a multi-agent team (architect, coder, reviewer).
1. State your understanding of what needs to be done.
2. Report what you found or changed.
3. Address another agent as @role when you need something from them.
"""


class DefaultPromptBuilder:
    """Assembles role brief, task text, conversation history and protocol."""

    def __init__(self, briefs: dict[str, str] | None = None, protocol: str = PROTOCOL):
        self.briefs = dict(ROLE_BRIEFS)
        if briefs:
            self.briefs.update(briefs)
        self.protocol = protocol

    def build(
        self,
        role: Role,
        subtask: Subtask,
        history: str,
        reply_to: Role | None = None,
    ) -> str:
        """Render the prompt for one step.

        Args:
            role: Role being played
            subtask: Subtask being worked on
            history: Rendered conversation context
            reply_to: Set when answering another role in a direct dialogue

        Returns:
            Prompt text
        """
        capability = get_capability(role)
        parts = [self.briefs.get(capability.prompt_template_id, f"You are the {role.value}.")]

        if capability.allowed_tools:
            parts.append(f"Allowed tools: {', '.join(capability.allowed_tools)}")

        if history:
            parts.append("---\n## Prior Conversation\n" + history)

        parts.append("---\n## Your Task\n" + subtask.description)
        if subtask.files:
            parts.append("Files in scope:\n" + "\n".join(f"- {f}" for f in subtask.files))

        if reply_to is not None:
            parts.append(
                f"---\n## Direct Dialogue\nYou ({role.value}) are responding to "
                f"{reply_to.value}. Answer their question or concern directly."
            )

        parts.append("---\n" + self.protocol)
        return "\n\n".join(parts)
