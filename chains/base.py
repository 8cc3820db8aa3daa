"""
链的公共文本拼装工具
"""
from typing import Dict, Iterable, Optional, Sequence

from core.schemas import Framework, QAPair, Stage

NO_PRIOR_CONTEXT = "No prior context provided."


def get_user_instruction_text(instruction: Optional[str]) -> str:
    """统一生成用户附加指令"""
    if instruction and instruction.strip():
        return f'Consider this specific instruction from the user: "{instruction.strip()}"'
    return ""


def format_stage_details(stages: Iterable[Stage]) -> str:
    """每个阶段一行：id、名称与说明"""
    return "\n".join(
        f'- Stage ID "{s.id}": "{s.name}" (Description: {s.description})' for s in stages
    )


def format_filled_stages(framework: Framework, contents: Dict[str, str]) -> str:
    blocks = []
    for stage in framework.stages:
        text = (contents.get(stage.id) or "").strip()
        if text:
            blocks.append(f"Stage: {stage.name} (ID: {stage.id})\nDescription: {stage.description}\nContent:\n{contents[stage.id]}\n---")
    return "\n\n".join(blocks) or "No prior content provided for filled stages."


def build_stage_base_prompt(stage: Stage, story_context: str,
                            qa_pairs: Optional[Sequence[QAPair]] = None,
                            instruction: Optional[str] = None) -> str:
    """单阶段生成的用户消息前半部分：阶段信息、上下文、问答与附加指令。"""
    prompt = f'I am working on the "{stage.name}" stage of my story.\n'
    prompt += f"Stage Description: {stage.description}\n"
    prompt += f"The story context from previous and current user inputs is:\n{story_context or NO_PRIOR_CONTEXT}\n\n"

    if qa_pairs:
        prompt += "Based on my answers to these clarifying questions:\n"
        for index, qa in enumerate(qa_pairs, start=1):
            prompt += f"Q{index}: {qa.question}\nA{index}: {qa.answer or '(No answer provided)'}\n"
        prompt += "\n"

    if instruction and instruction.strip():
        prompt += f"Specific instruction for this generation: {instruction.strip()}\n\n"
    return prompt
