from prompts.manager import get_prompt_template
