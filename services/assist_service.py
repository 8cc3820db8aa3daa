"""
AI 辅助业务服务 (Assist Service)
无状态的请求/响应封装：澄清问题、单阶段建议、整篇草稿、补全剩余阶段、灵感映射。
模型返回的 JSON 在这里做逐键校验；传输或解析失败统一抛出 ProviderError，不自动重试。
"""
from __future__ import annotations
import logging
from typing import Dict, List, Optional, Sequence

from chains import (
    create_clarifying_questions_chain, create_stage_suggestion_chain,
    create_full_draft_chain, create_complete_remaining_chain,
    create_idea_mapping_chain,
)
from chains.base import (
    build_stage_base_prompt, format_filled_stages, format_stage_details,
    get_user_instruction_text, NO_PRIOR_CONTEXT,
)
from core.exceptions import ProviderError
from core.schemas import Framework, OutputMode, Project, QAPair, Stage

logger = logging.getLogger(__name__)

NO_FULL_STORY_INSTRUCTION = "None. Focus on creativity and adherence to the framework structure and selected output mode based on the idea."
NO_COMPLETION_INSTRUCTION = "None. Focus on creativity, logical continuation from existing content, adherence to the framework structure, and the selected output mode."


def invalid_content_placeholder(stage: Stage, output_mode: OutputMode) -> str:
    return f"[AI content for {stage.name} ({OutputMode(output_mode).value} mode) was not generated or was in an invalid format.]"


def _invoke(chain_factory, inputs: dict, action: str, *factory_args):
    """构建并执行链；任何失败都转换为 ProviderError。"""
    try:
        chain = chain_factory(*factory_args)
        return chain.invoke(inputs)
    except ProviderError:
        raise
    except Exception as e:
        logger.error(f"AI 调用失败 ({action}): {e}", exc_info=True)
        raise ProviderError(f"Failed to {action}: {e}") from e


def _validate_stage_map(result, framework: Framework, requested: Sequence[Stage],
                        output_mode: OutputMode, fill_missing_with_placeholder: bool = True) -> Dict[str, str]:
    """
    逐键校验模型返回的 {stage_id: text}。

    - 缺失或非字符串的键：填占位文本（映射时填空字符串），记录警告。
    - 未请求的多余键：记录后丢弃。
    """
    if not isinstance(result, dict):
        raise ProviderError("AI response was not a JSON object keyed by stage id.")

    requested_ids = {s.id for s in requested}
    extra = [k for k in result if k not in requested_ids]
    if extra:
        logger.warning(f"框架 '{framework.id}' 的 AI 响应包含未请求的键，已忽略: {extra}")

    validated = {}
    for stage in requested:
        value = result.get(stage.id)
        if isinstance(value, str):
            validated[stage.id] = value
            continue
        logger.warning(f"AI 响应缺少阶段 '{stage.id}' 的有效内容 (框架 '{framework.id}')。")
        validated[stage.id] = invalid_content_placeholder(stage, output_mode) if fill_missing_with_placeholder else ""
    return validated


class AssistService:
    @staticmethod
    def build_stage_context(project: Project, framework: Framework, stage_id: str,
                            include_current_draft: bool = False) -> str:
        """
        单阶段生成的故事上下文：原始灵感 + 当前阶段之前所有非空阶段的内容。

        Args:
            include_current_draft: 追加当前阶段的草稿（生成建议时使用）。
        """
        context = ""
        if project.raw_story_idea and project.raw_story_idea.strip():
            context = f"Raw Story Idea:\n{project.raw_story_idea}\n\n---\n\n"

        for stage in framework.stages:
            if stage.id == stage_id:
                break
            content = project.stage_text(stage.id)
            if content.strip():
                context += f"Content for {stage.name}:\n{content}\n\n---\n\n"
        context = context.strip()

        if include_current_draft:
            stage = framework.get_stage(stage_id)
            name = stage.name if stage else stage_id
            current = project.stage_text(stage_id) or "Not started yet."
            context = f"{context}\n\nCurrent draft for {name}:\n{current}"
        return context

    @staticmethod
    def clarifying_questions(stage: Stage, story_context: str, instruction: Optional[str] = None) -> List[str]:
        """请求 3-4 个开放式问题；非字符串条目被过滤。"""
        inputs = {
            "stage_name": stage.name,
            "stage_description": stage.description,
            "story_context": story_context or NO_PRIOR_CONTEXT,
            "user_instruction_text": get_user_instruction_text(instruction),
        }
        result = _invoke(create_clarifying_questions_chain, inputs, "generate clarifying questions")

        questions = result.get("questions") if isinstance(result, dict) else None
        if not isinstance(questions, list):
            raise ProviderError("AI response for questions was not in the expected format.")
        return [q for q in questions if isinstance(q, str) and q.strip()]

    @staticmethod
    def single_stage_suggestion(framework_id: str, stage: Stage, story_context: str,
                                output_mode: OutputMode = OutputMode.CREATIVE,
                                qa_pairs: Optional[Sequence[QAPair]] = None,
                                instruction: Optional[str] = None) -> str:
        """为单个阶段生成正文 / 大纲 / 引导问题（纯文本）。"""
        mode = OutputMode(output_mode)
        inputs = {
            "stage_name": stage.name,
            "stage_description": stage.description,
            "base_prompt": build_stage_base_prompt(stage, story_context, qa_pairs, instruction),
        }
        logger.info(f"生成单阶段建议: {framework_id}/{stage.id} ({mode.value})")
        text = _invoke(create_stage_suggestion_chain, inputs, "generate stage suggestion", mode)
        text = (text or "").strip()
        if not text:
            raise ProviderError("AI returned an empty suggestion.")
        return text

    @staticmethod
    def full_draft_from_idea(framework: Framework, raw_idea: str,
                             output_mode: OutputMode = OutputMode.CREATIVE,
                             instruction: Optional[str] = None) -> Dict[str, str]:
        """根据原始灵感生成所有阶段。灵感为空时不调用模型，所有阶段返回空字符串。"""
        mode = OutputMode(output_mode)
        if not raw_idea or not raw_idea.strip():
            return {stage.id: "" for stage in framework.stages}

        inputs = {
            "raw_idea": raw_idea,
            "framework_name": framework.name,
            "framework_description": framework.description,
            "stage_details": format_stage_details(framework.stages),
            "user_instruction": (instruction or "").strip() or NO_FULL_STORY_INSTRUCTION,
        }
        result = _invoke(create_full_draft_chain, inputs, "generate full story draft", mode)
        return _validate_stage_map(result, framework, framework.stages, mode)

    @staticmethod
    def complete_remaining_stages(framework: Framework, existing_content: Dict[str, str],
                                  output_mode: OutputMode = OutputMode.CREATIVE,
                                  instruction: Optional[str] = None) -> Dict[str, str]:
        """只为空阶段（仅含空白也算空）生成内容；没有空阶段时直接返回 {}。"""
        mode = OutputMode(output_mode)
        existing_content = existing_content or {}
        empty_stages = [s for s in framework.stages if not (existing_content.get(s.id) or "").strip()]
        if not empty_stages:
            logger.info("没有需要补全的空阶段。")
            return {}

        inputs = {
            "framework_name": framework.name,
            "framework_description": framework.description,
            "filled_stages": format_filled_stages(framework, existing_content),
            "empty_stages": format_stage_details(empty_stages),
            "user_instruction": (instruction or "").strip() or NO_COMPLETION_INSTRUCTION,
        }
        result = _invoke(create_complete_remaining_chain, inputs, "complete remaining stages", mode)
        return _validate_stage_map(result, framework, empty_stages, mode)

    @staticmethod
    def map_idea_to_framework(raw_idea: str, framework: Framework) -> Dict[str, str]:
        """把原始灵感拆到各阶段；缺失的阶段为空字符串。"""
        if not raw_idea or not raw_idea.strip():
            return {stage.id: "" for stage in framework.stages}

        inputs = {
            "raw_idea": raw_idea,
            "framework_name": framework.name,
            "framework_description": framework.description,
            "stage_details": format_stage_details(framework.stages),
            "example_keys": ", ".join(f'"{s.id}"' for s in framework.stages[:2]),
        }
        result = _invoke(create_idea_mapping_chain, inputs, "map story idea to framework")
        return _validate_stage_map(result, framework, framework.stages, OutputMode.CREATIVE,
                                   fill_missing_with_placeholder=False)
