from __future__ import annotations

from choicebook.modules.structure.builder import ChoiceStructureBuilder
from choicebook.modules.structure.schemas import ChoiceStructure


def linear_builder(story_id: str = "linear_v1") -> ChoiceStructureBuilder:
    """C1 -> C2 -> END with one binary choice at C1."""
    builder = ChoiceStructureBuilder(story_id, "C1")
    builder.add_choice_point(
        {
            "id": "cp_c1",
            "chapter_id": "C1",
            "choices": [
                {"id": "c1_forward", "text": "Walk through the gate", "leads_to_chapter": "C2"},
                {"id": "c1_around", "text": "Climb over the wall", "leads_to_chapter": "C2"},
            ],
        }
    )
    builder.add_choice_point(
        {
            "id": "cp_c2",
            "chapter_id": "C2",
            "choice_type": "multiple",
            "choices": [{"id": "c2_finish", "text": "Open the last door", "leads_to_chapter": "END"}],
        }
    )
    builder.add_ending({"id": "E1", "chapter_id": "END", "ending_type": "happy", "satisfaction_rating": 4.0})
    return builder


def linear_story(story_id: str = "linear_v1") -> ChoiceStructure:
    return linear_builder(story_id).build()


def linear_payload(story_id: str = "linear_v1") -> dict:
    return linear_story(story_id).model_dump(mode="json")


def relationship_story(story_id: str = "mara_v1") -> ChoiceStructure:
    """C1 -> C2 -> END where the ending depends on how the reader treated Mara."""
    builder = ChoiceStructureBuilder(story_id, "C1")
    builder.add_character({"name": "Mara", "description": "the ferrywoman"})
    builder.add_plot_thread("river_debt")
    builder.add_choice_point(
        {
            "id": "cp_c1",
            "chapter_id": "C1",
            "affects_ending": True,
            "choices": [
                {
                    "id": "c1_kind",
                    "text": "Pay Mara what she asks",
                    "leads_to_chapter": "C2",
                    "emotional_tone": "positive",
                    "consequences": [
                        {
                            "type": "delayed",
                            "description": "Mara remembers your fairness",
                            "affects_character": "Mara",
                            "magnitude": "moderate",
                        }
                    ],
                    "character_impacts": [{"character_name": "Mara", "relationship_change": 5, "trust_change": 3}],
                },
                {
                    "id": "c1_cruel",
                    "text": "Refuse to pay",
                    "leads_to_chapter": "C2",
                    "emotional_tone": "negative",
                    "consequences": [
                        {
                            "type": "delayed",
                            "description": "The river debt grows",
                            "affects_plot_thread": "river_debt",
                            "magnitude": "major",
                        }
                    ],
                    "character_impacts": [{"character_name": "Mara", "relationship_change": -5, "trust_change": -4}],
                },
            ],
        }
    )
    builder.add_choice_point(
        {
            "id": "cp_c2",
            "chapter_id": "C2",
            "choices": [
                {"id": "c2_cross", "text": "Cross the river", "leads_to_chapter": "END"},
                {
                    "id": "c2_secret",
                    "text": "Ask Mara for the hidden ford",
                    "leads_to_chapter": "END",
                    "requires_previous_choice": "c1_kind",
                },
            ],
        }
    )
    builder.add_ending(
        {
            "id": "E_friend",
            "chapter_id": "END",
            "ending_type": "happy",
            "rarity": "rare",
            "requirements": [
                {"type": "character_relationship", "target": "Mara", "operator": "greater_than", "value": 0}
            ],
        }
    )
    builder.add_ending({"id": "E_alone", "chapter_id": "END", "ending_type": "bittersweet", "rarity": "common"})
    return builder.build()


def long_story(story_id: str = "long_v1", *, orphan_thread: str | None = None) -> ChoiceStructure:
    """C1 -> C2 -> C3 -> END; the first choice carries delayed and ending consequences."""
    consequences = [
        {"type": "immediate", "description": "The lantern flares", "magnitude": "minor"},
        {"type": "delayed", "description": "The keeper wakes", "affects_character": "Keeper", "magnitude": "major"},
        {"type": "ending_modifier", "description": "The lantern's light lingers", "magnitude": "moderate"},
    ]
    if orphan_thread:
        consequences.append(
            {"type": "delayed", "description": "A forgotten debt", "affects_plot_thread": orphan_thread}
        )
    builder = ChoiceStructureBuilder(story_id, "C1")
    builder.add_character("Keeper")
    builder.add_choice_point(
        {
            "id": "cp_c1",
            "chapter_id": "C1",
            "choices": [
                {
                    "id": "c1_light",
                    "text": "Light the lantern",
                    "leads_to_chapter": "C2",
                    "emotional_tone": "mysterious",
                    "consequences": consequences,
                },
                {"id": "c1_dark", "text": "Stay in the dark", "leads_to_chapter": "C2"},
            ],
        }
    )
    for chapter_id, target in (("C2", "C3"), ("C3", "END")):
        builder.add_choice_point(
            {
                "id": f"cp_{chapter_id.lower()}",
                "chapter_id": chapter_id,
                "choice_type": "multiple",
                "choices": [
                    {"id": f"{chapter_id.lower()}_on", "text": f"Leave {chapter_id}", "leads_to_chapter": target}
                ],
            }
        )
    builder.add_ending({"id": "E_dawn", "chapter_id": "END", "ending_type": "mysterious"})
    return builder.build()
