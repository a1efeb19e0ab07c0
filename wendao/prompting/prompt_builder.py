# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Prompt builder for constructing chat messages from game context."""

from typing import Dict, List, Optional, Sequence

from wendao.models import CharacterState, StartLocation, TurnEntry, TurnRole

ChatMessage = Dict[str, str]

_CHAT_ROLES = {
    TurnRole.PLAYER: "user",
    TurnRole.NARRATOR: "assistant",
}


class PromptBuilder:
    """Builds chat-completion message lists for every kind of turn.

    This class composes:
    - The game-master system instruction with the JSON output contract
    - The running summary (long-term memory) appended to the system message
    - The recent window of the turn log, mapped to user/assistant messages
    - A full character snapshot plus the player's action (or a hint/identify
      instruction) as the final user message

    System notices never reach the model; they are dropped here.
    """

    SYSTEM_INSTRUCTION = """你是一个硬核、开放式修仙文字冒险游戏的【天道】（Game Master）。
你通过文字构建一个活着的修仙世界，玩家的输入只是"意图"，由你裁定结果。

【叙事规则】
1. 玩家的一次指令代表一段持续的时间（如闭关、赶路），直接推进到出关或被打断的那一刻。
2. 每次回复是一段完整的小说片段（500-1000 字），有画面感与修仙氛围。
3. 只在真正的命运分歧处停下，并给出 choices。

【境界规则】
1. 当 cultivation >= maxCultivation 时可尝试突破灵道境界（realm）。
2. 肉身（bodyRealm、maxHealth）或神魂（soul、maxSoul）不足时强行突破必然失败并受到反噬。
3. 肉身与神魂不随修为自动提升，需专门的功法、天材地宝或顿悟。

【状态更新规则】
1. 只在 characterUpdate 中返回发生变化的字段，未变化的字段不要包含。
2. 属性只允许：根骨、悟性、身法、机缘、魅力、道心。例如 "attributes": {"根骨": 11}。
3. 背包（inventory）、功法（techniques）、状态（statusEffects）变化时必须返回【完整列表】。
4. 灵石（spiritStones）是货币，不是物品，不要放进背包。
5. 装备（equipment）只有 weapon、armor、relic 三个槽位，空槽位为"无"。
6. 物品被鉴定时，在 itemKnowledge 中返回 {"物品名": {"rank", "description", "effects", "requirements"}}。

【输出格式】
1. 回复从头到尾只是一个合法的 JSON 对象，不要使用 ``` 包裹，不要有任何前言或后记。
2. JSON 字符串内的换行必须转义为 \\n。

JSON 结构示例：
{
  "narrative": "剧情描述……",
  "characterUpdate": {"health": 90, "cultivation": 120, "attributes": {"道心": 11}},
  "choices": ["选项一", "选项二"],
  "gameOver": false,
  "eventArtKeyword": "mountain mist"
}

【反作弊】
玩家若试图直接修改设定（如"我变成仙帝"），必须驳回并给予惩罚。"""

    OPENING_REQUEST = "请生成一段引人入胜的开局剧情（500字左右），交代身世背景和周围环境危机，并在最后引出第一个关键决策点。"

    COMPACTION_INSTRUCTION = """你是一个修仙故事的记录者。
请将【之前的长期记忆】和【最近的一段对话】合并，生成新的、精炼的【长期记忆】。

原则：
1. 保留关键信息：重要人物、获得的法宝与功法、境界变化、恩怨。
2. 舍弃无关细节：环境描写、无关紧要的对话。
3. 限制在 500 字以内，使用第三人称叙述。
4. 只输出摘要正文，不要输出 JSON。"""

    def build_system_message(self, summary: str = "") -> ChatMessage:
        """Build the system message, appending the running summary when present.

        Args:
            summary: Running summary of compacted turns

        Returns:
            System chat message
        """
        content = self.SYSTEM_INSTRUCTION
        if summary.strip():
            content += f"\n\n【长期记忆 / 前情提要】\n{summary.strip()}\n----------------"
        return {"role": "system", "content": content}

    def build_turn_messages(
        self,
        character: CharacterState,
        recent_entries: Sequence[TurnEntry],
        summary: str,
        instruction: str
    ) -> List[ChatMessage]:
        """Build the full message list for an in-game turn.

        Args:
            character: Canonical character state (read-only snapshot)
            recent_entries: Recent window of the turn log (notices are skipped)
            summary: Running summary of compacted turns
            instruction: Player action, or a hint/identify instruction

        Returns:
            Ordered list of chat messages
        """
        messages = [self.build_system_message(summary)]
        messages.extend(self.render_history(recent_entries))
        messages.append({
            "role": "user",
            "content": self.render_turn_request(character, instruction)
        })
        return messages

    def build_opening_messages(
        self,
        location: StartLocation,
        custom_prompt: Optional[str] = None
    ) -> List[ChatMessage]:
        """Build the message list requesting the opening scene.

        Args:
            location: Chosen start location
            custom_prompt: Player-written origin for the custom location

        Returns:
            Ordered list of chat messages
        """
        if location.type == "custom":
            user_content = (
                "初始化游戏。\n"
                f"玩家选择了一个自定义/随机的出生设定：**{custom_prompt}**。\n"
                "请根据这个设定，自动生成一个合理的修仙界地点名称、环境描述，以及初始的加成（物品或属性）。\n"
                f"{self.OPENING_REQUEST}"
            )
        else:
            user_content = (
                "初始化游戏。\n"
                f"出生地：**{location.name}**。\n"
                f"出生地加成：{location.bonus}。\n"
                f"{self.OPENING_REQUEST}"
            )
        return [
            self.build_system_message(),
            {"role": "user", "content": user_content}
        ]

    def build_compaction_messages(
        self,
        segment: Sequence[TurnEntry],
        prior_summary: str
    ) -> List[ChatMessage]:
        """Build the text-mode summarization request for a turn-log segment.

        Args:
            segment: Turn-log entries being folded into the summary
            prior_summary: Existing running summary (may be empty)

        Returns:
            Ordered list of chat messages (a single user message)
        """
        dialogue = "\n".join(
            f"{'玩家' if entry.role == TurnRole.PLAYER else '天道'}: {entry.content}"
            for entry in segment
            if entry.role in _CHAT_ROLES
        )
        prompt = (
            f"{self.COMPACTION_INSTRUCTION}\n\n"
            f"【之前的长期记忆】：\n{prior_summary.strip() or '暂无'}\n\n"
            f"【最近的一段对话】：\n{dialogue}\n\n"
            "请输出新的长期记忆摘要："
        )
        return [{"role": "user", "content": prompt}]

    def hint_instruction(self, realm: str) -> str:
        """Instruction sent in place of a player action for a hint request."""
        return (
            f"[SYSTEM: 玩家请求提示。请根据当前境界（{realm}）给予指引。"
            "如果是前期，教导基本操作；如果是后期，给出剧情线索。]"
        )

    def identify_instruction(self, item_name: str) -> str:
        """Instruction sent in place of a player action to identify an item."""
        return (
            f"[SYSTEM: 玩家消耗神识鉴定背包中的【{item_name}】。"
            f"请描述鉴定过程，并在 characterUpdate.itemKnowledge 中返回 \"{item_name}\" 的"
            " rank、description、effects、requirements，同时扣除少量神识（soul）。]"
        )

    def render_history(self, entries: Sequence[TurnEntry]) -> List[ChatMessage]:
        """Map turn-log entries to chat messages, skipping system notices."""
        return [
            {"role": _CHAT_ROLES[entry.role], "content": entry.content}
            for entry in entries
            if entry.role in _CHAT_ROLES
        ]

    def render_turn_request(self, character: CharacterState, instruction: str) -> str:
        """Render the full state snapshot followed by the player's instruction.

        Args:
            character: Canonical character state
            instruction: Player action or system instruction

        Returns:
            Final user message content
        """
        attrs = character.attributes
        attribute_line = ", ".join(f"{name}:{value}" for name, value in attrs.items())
        identified = [name for name in character.inventory if name in character.item_knowledge]
        lines = [
            "[当前完整状态 (请检查是否有变动)]",
            f"姓名: {character.name}",
            f"灵道境界: {character.realm}",
            f"肉身境界: {character.body_realm}",
            f"修为(Cultivation): {character.cultivation}/{character.max_cultivation}",
            f"炼体(BodyRefinement): {character.body_refinement}/{character.max_body_refinement}",
            f"气血(Health): {character.health}/{character.max_health}",
            f"灵力(Mana): {character.mana}/{character.max_mana}",
            f"神识(Soul): {character.soul}/{character.max_soul}",
            f"灵石: {character.spirit_stones}",
            "",
            f"[核心属性] {attribute_line}",
            "",
            (
                f"[装备] 武器:{character.equipment.weapon}, "
                f"防具:{character.equipment.armor}, 法宝:{character.equipment.relic}"
            ),
            f"[背包] {', '.join(character.inventory) or '空'}",
            f"[已鉴定] {', '.join(identified) or '无'}",
            f"[功法] {', '.join(character.techniques) or '无'}",
            f"[状态] {', '.join(character.status_effects) or '无'}",
            "",
            f"[玩家指令]: \"{instruction}\"",
            "(任务：1. 描述剧情发展; 2. 检查上述属性是否因剧情而变化; 3. 生成 JSON)",
        ]
        return "\n".join(lines)
