from prompts.manager import get_prompt_template, get_prompt_fragment, force_reload_prompts
