"""
ייצור דיאגרמות Mermaid ממכונת המצבים של הלידים.

שימוש:
    python scripts/generate_state_diagrams.py                       # הדפסה למסך
    python scripts/generate_state_diagrams.py --write docs/STATE_DIAGRAMS.md
    python scripts/generate_state_diagrams.py --check docs/STATE_DIAGRAMS.md   # ל-CI
"""
import argparse
import sys
from pathlib import Path
from typing import Any

# הוספת root לנתיב כדי לאפשר ייבוא
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.state_machine.states import (  # noqa: E402
    LEAD_TRANSITIONS,
    LeadState,
    RESTRICTED_STATES,
    TERMINAL_STATES,
)

LEAD_LABELS: dict[str, str] = {
    LeadState.NEW.value: "ליד חדש",
    LeadState.DRIP.value: "cold outreach",
    LeadState.ACTIVE.value: "שיחה פעילה",
    LeadState.PITCH_READY.value: "הצעה מוכנה",
    LeadState.READY_TO_SUBMIT.value: "אישר - מוכן להגשה",
    LeadState.SUBMITTED.value: "הוגש",
    LeadState.OFFER_RECEIVED.value: "התקבלה הצעה",
    LeadState.DEAD.value: "סגור",
    LeadState.ARCHIVED.value: "בארכיון",
}

HEADER = "### Lead state machine"


def generate_mermaid_from_transitions(
    transitions: dict[Any, list[Any]],
    labels: dict[str, str],
    initial: Any,
    terminal: frozenset | set = frozenset(),
    locked: frozenset | set = frozenset(),
) -> str:
    """
    stateDiagram-v2 מתוך מילון מעברים {state: [target_states]}.

    מצבים נעולים מסומנים ב-🔒 בתווית; מצבים סופיים מקבלים חץ ל-[*].
    """
    lines: list[str] = ["stateDiagram-v2"]

    all_states: list[str] = []
    for source, targets in transitions.items():
        for state in (source, *targets):
            if state.value not in all_states:
                all_states.append(state.value)

    locked_values = {state.value for state in locked}
    for state_value in all_states:
        label = labels.get(state_value, state_value)
        if state_value in locked_values:
            label = f"{label} 🔒"
        lines.append(f"    {state_value} : {label}")

    lines.append("")
    lines.append(f"    [*] --> {initial.value}")

    for source, targets in transitions.items():
        for target in targets:
            lines.append(f"    {source.value} --> {target.value}")

    for state in sorted(terminal, key=lambda s: s.value):
        lines.append(f"    {state.value} --> [*]")

    return "\n".join(lines)


def generate_message_status_diagram() -> str:
    """סטטוס הודעה יוצאת - persist לפני שליחה, retry עם backoff."""
    return """stateDiagram-v2
    pending : נשמרה, לפני שליחה
    sent : נשלחה
    failed : נכשלה
    delivered : התקבלה

    [*] --> pending
    pending --> sent : gateway אישר
    pending --> failed : שגיאת gateway / circuit פתוח
    failed --> sent : retry אחרי backoff
    failed --> [*] : מוצו הניסיונות / הודעה נכנסת חדשה
    sent --> [*]"""


def generate_all_diagrams() -> dict[str, str]:
    return {
        "ליד (LeadState)": generate_mermaid_from_transitions(
            LEAD_TRANSITIONS,
            LEAD_LABELS,
            initial=LeadState.NEW,
            terminal=TERMINAL_STATES,
            locked=RESTRICTED_STATES,
        ),
        "הודעה יוצאת (MessageStatus)": generate_message_status_diagram(),
    }


def format_diagrams_as_markdown(diagrams: dict[str, str]) -> str:
    sections: list[str] = [f"{HEADER}\n"]
    for name, mermaid_code in diagrams.items():
        sections.append(f"#### {name}\n")
        sections.append(f"```mermaid\n{mermaid_code}\n```\n")
    return "\n".join(sections)


def write_diagrams(path: Path, markdown_content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(markdown_content, encoding="utf-8")
    print(f"עודכן: {path}")


def check_diagrams(path: Path, markdown_content: str) -> bool:
    """True אם הקובץ קיים ותואם לדיאגרמות שנוצרות מהקוד."""
    if not path.exists():
        print(f"שגיאה: {path} לא קיים")
        return False

    if path.read_text(encoding="utf-8") == markdown_content:
        print("הדיאגרמות מסונכרנות עם הקוד ✓")
        return True

    print(f"שגיאה: {path} אינו מסונכרן עם הקוד!")
    print(f"הרץ: python scripts/generate_state_diagrams.py --write {path}")
    return False


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="ייצור דיאגרמות Mermaid ממכונת המצבים")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--write", type=Path, help="כתיבת הדיאגרמות לקובץ markdown")
    group.add_argument("--check", type=Path, help="בדיקה שהקובץ מסונכרן עם הקוד (ל-CI)")
    args = parser.parse_args(argv)

    markdown = format_diagrams_as_markdown(generate_all_diagrams())

    if args.check:
        return 0 if check_diagrams(args.check, markdown) else 1
    if args.write:
        write_diagrams(args.write, markdown)
    else:
        print(markdown)
    return 0


if __name__ == "__main__":
    sys.exit(main())
