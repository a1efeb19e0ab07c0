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
"""Static game content: start locations and the initial character."""

from typing import List, Optional

from wendao.models import CharacterState, StartLocation

CUSTOM_ORIGIN_ID = "custom"
RANDOM_ORIGIN_PROMPT = "随机生成一个充满奇遇的神秘出生地"

START_LOCATIONS: List[StartLocation] = [
    StartLocation(
        id="sect",
        name="青云宗 · 外门",
        type="balanced",
        description="正道第一大宗。虽规矩森严，但胜在安稳。适合按部就班修行的正统修士。",
        bonus="获《引气诀》、制式铁剑、身份腰牌。每月可领低保灵石。"
    ),
    StartLocation(
        id="valley",
        name="神农百草谷",
        type="alchemy",
        description="隐世医仙的隐居地，遍地灵草，土质肥沃。适合种田、炼丹流派。",
        bonus="获《神农本草经》残卷、破旧丹炉、灵谷种子*5、不知名灵药种子*1。"
    ),
    StartLocation(
        id="tomb",
        name="上古剑冢",
        type="combat",
        description="杀伐之气极重，遍地残剑。由于煞气入体，修炼极快但容易走火入魔。适合炼器、剑修。",
        bonus="根骨+5，获【断裂的玄铁剑】（可重铸）、洗剑池水。初始气血略低。"
    ),
    StartLocation(
        id="city",
        name="大晋皇都 · 坊市",
        type="social",
        description="红尘滚滚，鱼龙混杂。只要有钱，什么都能买到。适合经商、符箓、阵法流派。",
        bonus="灵石+200，悟性+5，获基础《符箓大全》、制符笔。"
    ),
    StartLocation(
        id=CUSTOM_ORIGIN_ID,
        name="随机 / 自定义",
        type="custom",
        description="天机难测，转世之地全凭道友一念之间。可随机生成，亦可自行构想。",
        bonus="完全随机，充满未知与无限可能。"
    ),
]


def get_start_location(origin_id: str) -> Optional[StartLocation]:
    """Look up a start location by id.

    Args:
        origin_id: Start location identifier

    Returns:
        The matching StartLocation, or None if the id is unknown
    """
    for location in START_LOCATIONS:
        if location.id == origin_id:
            return location
    return None


def initial_character() -> CharacterState:
    """Fresh character for a new game."""
    return CharacterState()
