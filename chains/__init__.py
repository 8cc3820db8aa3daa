from chains.assist import (
    create_clarifying_questions_chain, create_stage_suggestion_chain,
    create_full_draft_chain, create_complete_remaining_chain,
    create_idea_mapping_chain,
)
