"""
AI 辅助链 (Assist Chains)
每个链 = prompts.yaml 模板 | 配置选定的聊天模型 | 输出解析器。
JSON 类链使用 JsonOutputParser，自动剥离 ```json 代码块。
"""
from langchain_core.runnables import RunnablePassthrough
from langchain_core.output_parsers import StrOutputParser, JsonOutputParser
from infra.llm.factory import get_llm
from prompts import get_prompt_template, get_prompt_fragment
from core.schemas import OutputMode

# 温度
QUESTIONS_TEMPERATURE = 0.5
MAPPING_TEMPERATURE = 0.3


def stage_temperature(output_mode: OutputMode) -> float:
    return 0.7 if OutputMode(output_mode) == OutputMode.CREATIVE else 0.5


def bulk_temperature(output_mode: OutputMode) -> float:
    return 0.75 if OutputMode(output_mode) == OutputMode.CREATIVE else 0.6


def create_clarifying_questions_chain():
    """创建澄清问题链，输出 {"questions": [...]}"""
    llm = get_llm("clarifying_questions", temperature=QUESTIONS_TEMPERATURE, json_mode=True)
    prompt = get_prompt_template("clarifying_questions")
    return prompt | llm | JsonOutputParser()


def create_stage_suggestion_chain(output_mode: OutputMode = OutputMode.CREATIVE):
    """创建单阶段生成链，输出模式决定 system 提示词与温度"""
    mode = OutputMode(output_mode)
    llm = get_llm("stage_suggestion", temperature=stage_temperature(mode))
    prompt = get_prompt_template(f"stage_{mode.value}")
    return prompt | llm | StrOutputParser()


def create_full_draft_chain(output_mode: OutputMode = OutputMode.CREATIVE):
    """根据灵感一次生成所有阶段，输出 {stage_id: text}"""
    mode = OutputMode(output_mode)
    llm = get_llm("full_draft", temperature=bulk_temperature(mode), json_mode=True)
    prompt = get_prompt_template("full_draft")
    mode_task = get_prompt_fragment("mode_tasks", f"full_draft.{mode.value}")
    return (
        RunnablePassthrough.assign(
            mode_task=lambda x: mode_task,
            output_mode=lambda x: mode.value,
        )
        | prompt | llm | JsonOutputParser()
    )


def create_complete_remaining_chain(output_mode: OutputMode = OutputMode.CREATIVE):
    """只为空阶段补全内容，输出 {stage_id: text}"""
    mode = OutputMode(output_mode)
    llm = get_llm("complete_remaining", temperature=bulk_temperature(mode), json_mode=True)
    prompt = get_prompt_template("complete_remaining")
    mode_task = get_prompt_fragment("mode_tasks", f"complete_remaining.{mode.value}")
    return (
        RunnablePassthrough.assign(
            mode_task=lambda x: mode_task,
            output_mode=lambda x: mode.value,
        )
        | prompt | llm | JsonOutputParser()
    )


def create_idea_mapping_chain():
    """把原始灵感拆分到框架各阶段"""
    llm = get_llm("idea_mapping", temperature=MAPPING_TEMPERATURE, json_mode=True)
    prompt = get_prompt_template("idea_mapping")
    return prompt | llm | JsonOutputParser()
