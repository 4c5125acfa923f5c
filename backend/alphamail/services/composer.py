"""Response composition and email rendering.

Decides what Alpha appends to a model-written reply (next-goal
confirmation, "what's next" question, CC/group note, goal acknowledgement)
and holds every fixed, non-model message. Rendering escapes all dynamic
text before it reaches HTML.
"""

import html
from dataclasses import dataclass
from string import Template
from urllib.parse import quote

from alphamail.models.conversation import CheckinExtraction, CheckinReply

SIGNOFF = "- alpha"

FALLBACK_MESSAGE = (
    "hey, i got your message but i'm having a bit of trouble processing it right now. "
    "can you try sending that again in a few minutes?\n\n"
    "sorry about that - sometimes my brain needs a quick reboot."
)

ONBOARDING_FALLBACK_MESSAGE = (
    "hey! i got your reply but had a little trouble processing it. can you try again? "
    "just tell me your name and a goal for this week."
)

DEFAULT_CLARIFICATION = (
    "hmm, i couldn't quite catch that. can you reply with your name and a goal for "
    "this week? like: 'i'm jamie. my goal is to run 3 times.'"
)

ASK_NEXT_GOAL = "so what's your goal for this week?"
GOAL_ACKNOWLEDGEMENT = "got it, i'll check in with you sunday on that."

CHECKIN_SUBJECT = "sunday check-in"
ONBOARDING_SUBJECT = "hey, let's get started"

DEFAULT_CHECKIN_REPLY_SUBJECT = "check-in"
DEFAULT_ONBOARDING_REPLY_SUBJECT = "let's get you set up"
DEFAULT_UNKNOWN_REPLY_SUBJECT = "hello"

ONBOARDING_PROMPT = """hey, thanks for confirming -- good to know you're a real human.

i'm alpha, your weekly accountability partner. every sunday i'll check in on your goal. you reply, tell me how it went, and set a new one. no app, no dashboard -- just email.

i want to get started right away. just reply to this email with:

1. your name (what you want me to call you)
2. a goal for this week -- or honestly, anything on your mind

for example:

"hey, i'm jamie. my goal this week is to finish the first draft of my blog post and send it to 2 friends for feedback."

or even just:

"sarah. run 3 times this week."

keep it simple. hit reply and let's go."""

EMAIL_LAYOUT = Template(
    """<!DOCTYPE html>
<html>
  <body style="margin: 0; padding: 0; background: #ffffff;">
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto; padding: 40px 20px; color: #1a1a1a;">
$paragraphs
    </div>
  </body>
</html>"""
)

_PARAGRAPH = '      <p style="font-size: 16px; line-height: 1.6; margin-bottom: 16px; white-space: pre-wrap;">{}</p>'
_SIGNOFF_PARAGRAPH = f'      <p style="font-size: 16px; color: #6b7280;">{SIGNOFF}</p>'


@dataclass(frozen=True)
class RenderedEmail:
    """HTML and plain-text bodies of one outbound email."""

    html: str
    text: str


def render_email(
    body: str,
    greeting: str | None = None,
    link: str | None = None,
    link_label: str | None = None,
) -> RenderedEmail:
    """Render a message body with Alpha's greeting and sign-off.

    Args:
        body: Message text. Escaped for HTML.
        greeting: Optional first line such as "yo sam".
        link: URL inside *body* to turn into an anchor in the HTML part.
        link_label: Anchor text. Defaults to the URL.
    """
    escaped_body = html.escape(body)
    if link:
        escaped_link = html.escape(link)
        anchor = (
            f'<a href="{escaped_link}" style="color: #2563eb;">'
            f"{html.escape(link_label or link)}</a>"
        )
        escaped_body = escaped_body.replace(escaped_link, anchor)

    paragraphs = []
    if greeting:
        paragraphs.append(_PARAGRAPH.format(html.escape(greeting)))
    paragraphs.append(_PARAGRAPH.format(escaped_body))
    paragraphs.append(_SIGNOFF_PARAGRAPH)

    text_parts = [greeting, body, SIGNOFF] if greeting else [body, SIGNOFF]
    return RenderedEmail(
        html=EMAIL_LAYOUT.substitute(paragraphs="\n".join(paragraphs)),
        text="\n\n".join(text_parts),
    )


def greeting_for(first_name: str | None) -> str:
    """Greeting line used on replies to known senders."""
    return f"yo {first_name or 'there'}"


def signup_welcome_message(goal: str | None) -> str:
    """Body of the welcome email sent after web signup."""
    first_goal = f"your first goal: {goal}\n\n" if goal else ""
    return (
        "welcome to alphamail. i'm alpha, your weekly accountability partner.\n\n"
        f"{first_goal}"
        "here's how this works:\n\n"
        "every sunday i'll email you asking how your goal went. you reply with what "
        "happened - the good, the bad, whatever. then tell me your next goal. that's it.\n\n"
        "see you sunday."
    )


class ResponseComposer:
    """Builds the literal text of Alpha's outbound messages."""

    def __init__(self, app_url: str) -> None:
        self._app_url = app_url.rstrip("/")

    @property
    def app_url(self) -> str:
        return self._app_url

    def signup_link(self, email: str) -> str:
        """Signup URL carrying the URL-encoded sender address."""
        return f"{self._app_url}/signup?email={quote(email, safe='')}"

    def intro_message(self, email: str) -> str:
        return (
            "yo! i'm alpha, your ai accountability partner.\n\n"
            "i help people actually follow through on their goals by checking in every "
            "sunday. no app, no complicated system - just email.\n\n"
            "want to try it? sign up here and we can keep chatting:\n"
            f"{self.signup_link(email)}\n\n"
            "once you're in, just tell me what you want to accomplish this week and "
            "i'll hold you to it."
        )

    def reminder_message(self, email: str) -> str:
        return (
            "hey again! looks like you haven't signed up yet.\n\n"
            "i'd love to keep chatting, but i need you to create an account first so i "
            "can remember our conversations and actually help you with your goals.\n\n"
            "it takes 30 seconds:\n"
            f"{self.signup_link(email)}\n\n"
            "see you on the other side."
        )

    def welcome_message(self, first_name: str, goal: str) -> str:
        return (
            f"nice to meet you, {first_name}! you're all set. ✅\n\n"
            f"your goal: {goal}\n\n"
            "i'll check in with you sunday to see how it went. just reply to that email "
            "when it comes.\n\n"
            "until then, go crush it."
        )

    @staticmethod
    def checkin_prompt(goal: str) -> str:
        """Body of the weekly check-in prompt."""
        return (
            "sunday check-in time.\n\n"
            f"your goal was: {goal}\n\n"
            "so... did you? be honest. i won't judge (much).\n\n"
            "hit reply and tell me what happened. the good, the bad, whatever. "
            "then give me your next goal."
        )

    @staticmethod
    def checkin_response(
        reply: CheckinReply,
        extraction: CheckinExtraction,
        cc_note: str = "",
    ) -> str:
        """Compose the full check-in reply.

        A named next goal is confirmed, and then no question is asked.
        Otherwise the "what's next" question is appended when the model asks
        for it.
        """
        text = reply.message.strip()
        if extraction.next_goal:
            text += f"\n\ngot it. your new goal: {extraction.next_goal}. i'll check in sunday."
        elif reply.ask_for_next_goal:
            text += f"\n\n{ASK_NEXT_GOAL}"
        if cc_note:
            text += f"\n\n{cc_note}"
        return text

    @staticmethod
    def conversation_response(reply_text: str, goal_created: bool, cc_note: str = "") -> str:
        """Compose a goal-less conversational reply."""
        text = reply_text.strip()
        if goal_created:
            text += f"\n\n{GOAL_ACKNOWLEDGEMENT}"
        if cc_note:
            text += f"\n\n{cc_note}"
        return text

    def cc_note(
        self,
        non_user_emails: list[str],
        user_names: list[str],
        sender_has_group: bool,
    ) -> str:
        """Note about CC'd people.

        Args:
            non_user_emails: CC'd addresses without an account.
            user_names: Display names of CC'd account holders not yet grouped with the sender.
            sender_has_group: Whether the sender already belongs to a group.
        """
        notes = []
        if non_user_emails:
            local_parts = ", ".join(e.split("@")[0] for e in non_user_emails)
            notes.append(
                f"btw, i noticed you cc'd {local_parts}. if you want them to join our "
                f"accountability sessions, tell them to sign up at {self._app_url} and "
                "then we can do group goals together."
            )
        if user_names:
            names = ", ".join(user_names)
            confirm = "yes" if sender_has_group else f"yes, add {names}"
            notes.append(
                f"i see you cc'd {names} - they're already using alphamail! want to start "
                f'a group accountability session together? just reply "{confirm}" and '
                "i'll set it up."
            )
        return "\n\n".join(notes)

    @staticmethod
    def group_created_message(member_names: list[str]) -> str:
        names = " and ".join(member_names)
        return (
            f"done! i've created an accountability group with you and {names}. i'll check "
            "in with all of you together on sundays now. you can reply-all to keep everyone "
            "in the loop, or just reply to me directly if you want to chat 1:1."
        )
