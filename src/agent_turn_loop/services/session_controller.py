from __future__ import annotations

from agent_turn_loop.messages import Role, Session


class SessionController:
    """Formats session listings and summaries for the REPL."""

    def __init__(self, *, line_prefix: str, short_id_len: int = 8):
        self._line_prefix = line_prefix
        self._short_id_len = short_id_len

    def short_id(self, value: str) -> str:
        if len(value) <= self._short_id_len:
            return value
        return value[: self._short_id_len]

    def format_session_list_entry(self, session: dict, *, active_session_id: str | None) -> str:
        marker = "*" if session["id"] == active_session_id else " "
        title = session.get("title") or session.get("preview") or "(empty)"
        return (
            f"{self._line_prefix}{marker} {title} [{self.short_id(session['id'])}] (id={session['id']}) "
            f"({session['provider']}/{session['model']}, messages={session['message_count']}, "
            f"updated={session['updated_at']})"
        )

    def format_session_summary_lines(self, session: Session, *, title: str = "") -> list[str]:
        counts = {role: 0 for role in Role}
        for message in session.messages:
            counts[message.role] += 1
        lines = [
            f"{self._line_prefix}Session {title or self.short_id(session.id)} (id={session.id})",
            f"{self._line_prefix}- Model: {session.provider}/{session.model}",
            f"{self._line_prefix}- Created: {session.created_at} | Updated: {session.updated_at}",
            f"{self._line_prefix}- Messages: {len(session.messages)} "
            f"(user={counts[Role.USER]}, assistant={counts[Role.ASSISTANT]}, tool={counts[Role.TOOL]})",
        ]
        last_user = next((m for m in reversed(session.messages) if m.role is Role.USER), None)
        if last_user is not None:
            lines.append(f"{self._line_prefix}- Last user: {self._preview(last_user.content)}")
        return lines

    @staticmethod
    def _preview(text: str, limit: int = 80) -> str:
        text = " ".join(text.split())
        return text if len(text) <= limit else text[:limit] + "..."
