from __future__ import annotations

import discord

from verigate.models import Challenge
from verigate.services.verification_service import (
    AnswerOutcome,
    AnswerStatus,
    IssueStatus,
    VerificationService,
)

PROMPT_COLOR = 0x2C3E50
CHALLENGE_COLOR = 0x3498DB
SUCCESS_COLOR = 0x27AE60
FAILURE_COLOR = 0xE74C3C

ALREADY_VERIFIED_TEXT = "✅ You are already verified!"
NO_PENDING_TEXT = "❌ No pending verification found. Please start the verification process again."
ERROR_TEXT = "❌ An error occurred. Please try again."
GUILD_ONLY_TEXT = "❌ Verification only works inside a server."


def build_prompt_embed(inactivity_days: int) -> discord.Embed:
    embed = discord.Embed(
        title="🛡️ Server Verification",
        description=(
            "Welcome to our server! To gain access to all channels and features, please click the button "
            "below to verify your account.\n\n"
            "**What happens when you verify:**\n"
            "• Access to all server channels\n"
            "• Ability to participate in discussions\n"
            "• Join voice channels\n"
            "• React to messages\n\n"
            "**Please note:** Your verification may be removed if you remain inactive "
            f"(no messages, reactions, or voice activity) for more than {inactivity_days} days."
        ),
        color=PROMPT_COLOR,
        timestamp=discord.utils.utcnow(),
    )
    embed.set_footer(text="Click the button below to start verification")
    return embed


def build_challenge_embed(challenge: Challenge, timeout_seconds: int) -> discord.Embed:
    minutes = max(1, timeout_seconds // 60)
    embed = discord.Embed(
        title="🔐 Verification Required",
        description=(
            "Please solve this math problem to verify:\n\n"
            f"**{challenge.question} = ?**\n\n"
            "Select the correct answer from the buttons below."
        ),
        color=CHALLENGE_COLOR,
        timestamp=discord.utils.utcnow(),
    )
    embed.set_footer(text=f"You have {minutes} minute{'s' if minutes != 1 else ''} to complete this verification.")
    return embed


def build_outcome_embed(outcome: AnswerOutcome) -> discord.Embed:
    if outcome.status is AnswerStatus.ACCEPTED:
        description = "You have been verified and granted access to the server."
        if outcome.failed_role_ids:
            description += "\n\nSome roles could not be applied yet; they will be synced automatically."
        return discord.Embed(
            title="✅ Verification Successful!",
            description=description,
            color=SUCCESS_COLOR,
            timestamp=discord.utils.utcnow(),
        )
    return discord.Embed(
        title="❌ Incorrect Answer",
        description="That's not the correct answer. Please click the verify button to try again with a new question.",
        color=FAILURE_COLOR,
        timestamp=discord.utils.utcnow(),
    )


class AnswerButton(discord.ui.Button):
    def __init__(self, service: VerificationService, answer: int):
        super().__init__(
            label=str(answer),
            style=discord.ButtonStyle.secondary,
            custom_id=f"verigate:answer:{answer}",
        )
        self.service = service

    async def callback(self, interaction: discord.Interaction) -> None:
        if interaction.guild is None:
            await interaction.response.send_message(GUILD_ONLY_TEXT, ephemeral=True)
            return
        raw = str(self.custom_id).rsplit(":", 1)[-1]
        outcome = await self.service.submit_answer(interaction.user.id, interaction.guild.id, raw)
        if outcome.status in {AnswerStatus.ACCEPTED, AnswerStatus.REJECTED}:
            if self.view is not None:
                self.view.stop()
            await interaction.response.edit_message(embed=build_outcome_embed(outcome), view=None)
            return
        text = NO_PENDING_TEXT if outcome.status is AnswerStatus.NO_PENDING else ERROR_TEXT
        await interaction.response.send_message(text, ephemeral=True)


class ChallengeView(discord.ui.View):
    """The ephemeral answer buttons for one issued challenge."""

    def __init__(self, service: VerificationService, challenge: Challenge):
        super().__init__(timeout=service.settings.challenge_timeout_seconds)
        for answer in challenge.choices:
            self.add_item(AnswerButton(service, answer))


class VerifyPromptView(discord.ui.View):
    """Persistent verify button; registered with bot.add_view on startup."""

    def __init__(self, service: VerificationService):
        super().__init__(timeout=None)
        self.service = service

    @discord.ui.button(
        label="🔐 Verify Account",
        style=discord.ButtonStyle.primary,
        custom_id="verigate:verify",
    )
    async def verify(self, interaction: discord.Interaction, button: discord.ui.Button) -> None:
        if interaction.guild is None:
            await interaction.response.send_message(GUILD_ONLY_TEXT, ephemeral=True)
            return
        issue = await self.service.request_challenge(interaction.user.id, interaction.guild.id)
        if issue.status is IssueStatus.ALREADY_VERIFIED:
            await interaction.response.send_message(ALREADY_VERIFIED_TEXT, ephemeral=True)
            return
        if issue.status is IssueStatus.FAILED or issue.challenge is None:
            await interaction.response.send_message(ERROR_TEXT, ephemeral=True)
            return
        await interaction.response.send_message(
            embed=build_challenge_embed(issue.challenge, self.service.settings.challenge_timeout_seconds),
            view=ChallengeView(self.service, issue.challenge),
            ephemeral=True,
        )
