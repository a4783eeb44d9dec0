"""
Prompt Formatter - Model-specific chat formatting

Responsibilities:
- Detect model family from model name
- Render (system prompt, message list) into one model-ready string
- Use tokenizer chat template if available
- Fallback to manual formatting for known families

Design principles:
- Tokenizer template priority (most robust)
- Manual fallback for known families
- Generic transcript for unknown models
- Stateless formatting (no side effects)
"""

import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


def _inst_format(system_prompt: str, messages: List[Dict[str, str]]) -> str:
    # [INST] families have no system role: fold it into the first user turn
    text = ""
    pending_system = system_prompt
    for message in messages:
        if message['role'] == 'user':
            content = message['content']
            if pending_system:
                content = f"{pending_system}\n\n{content}"
                pending_system = ""
            text += f"[INST] {content} [/INST]"
        elif message['role'] == 'assistant':
            text += f" {message['content']}</s>"
    if pending_system:
        text += f"[INST] {pending_system} [/INST]"
    return text


def _llama3_format(system_prompt: str, messages: List[Dict[str, str]]) -> str:
    text = "<|begin_of_text|>"
    if system_prompt:
        text += f"<|start_header_id|>system<|end_header_id|>\n\n{system_prompt}<|eot_id|>"
    for message in messages:
        text += f"<|start_header_id|>{message['role']}<|end_header_id|>\n\n{message['content']}<|eot_id|>"
    return text + "<|start_header_id|>assistant<|end_header_id|>\n\n"


def _tagged_format(end_tag: str):
    def render(system_prompt: str, messages: List[Dict[str, str]]) -> str:
        text = f"<|system|>\n{system_prompt}{end_tag}\n" if system_prompt else ""
        for message in messages:
            text += f"<|{message['role']}|>\n{message['content']}{end_tag}\n"
        return text + "<|assistant|>\n"
    return render


class PromptFormatter:
    """Format chats for specific model families"""

    # Known model families and their manual formatting
    MANUAL_FORMATS = {
        "mistral": _inst_format,
        "mixtral": _inst_format,
        "llama": _inst_format,
        "llama-2": _inst_format,
        "llama-3": _llama3_format,
        "zephyr": _tagged_format("</s>"),
        "phi": _tagged_format("<|end|>"),
    }

    def __init__(self, model_name: str, tokenizer=None):
        """
        Initialize formatter

        Args:
            model_name: HuggingFace model identifier
            tokenizer: Optional tokenizer with chat_template attribute
        """
        self.model_name = model_name
        self.tokenizer = tokenizer
        self.model_family = self._detect_model_family(model_name)

        self.has_chat_template = (
            tokenizer is not None and
            getattr(tokenizer, 'chat_template', None) is not None
        )

        if self.has_chat_template:
            logger.info(f"Using tokenizer chat template for {model_name}")
        elif self.model_family in self.MANUAL_FORMATS:
            logger.info(f"Using manual formatting for {self.model_family} family")
        else:
            logger.warning(
                f"No chat template or known format for {model_name}. "
                f"Using generic transcript"
            )

    def _detect_model_family(self, model_name: str) -> str:
        name_lower = model_name.lower()

        # Order matters - most specific first
        if "llama-3" in name_lower or "llama3" in name_lower:
            return "llama-3"
        elif "llama-2" in name_lower or "llama2" in name_lower:
            return "llama-2"
        elif "llama" in name_lower:
            return "llama"
        elif "mixtral" in name_lower:
            return "mixtral"
        elif "mistral" in name_lower:
            return "mistral"
        elif "zephyr" in name_lower:
            return "zephyr"
        elif "phi" in name_lower:
            return "phi"
        else:
            return "generic"

    def format_chat(self, system_prompt: str, messages: Optional[List[Dict[str, str]]] = None) -> str:
        """
        Render a system prompt plus conversation into model input.

        Priority:
        1. Tokenizer chat template (if available)
        2. Manual formatting for known family
        3. Generic "role: content" transcript

        Non user/assistant roles in messages are dropped (the system prompt
        is passed separately).

        Examples:
            >>> formatter = PromptFormatter("mistralai/Mistral-7B-Instruct-v0.2")
            >>> formatter.format_chat("Be brief.", [{"role": "user", "content": "Hi"}])
            '[INST] Be brief.\\n\\nHi [/INST]'
        """
        turns = [
            {'role': m['role'], 'content': m.get('content', '') or ''}
            for m in (messages or [])
            if m.get('role') in ('user', 'assistant')
        ]

        if self.has_chat_template:
            try:
                chat = ([{"role": "system", "content": system_prompt}] if system_prompt else []) + turns
                formatted = self.tokenizer.apply_chat_template(
                    chat,
                    tokenize=False,
                    add_generation_prompt=True
                )
                logger.debug("Applied tokenizer chat template")
                return formatted
            except Exception as e:
                # Some templates reject a system role or non-alternating turns
                logger.warning(
                    f"Tokenizer chat template failed: {e}. "
                    f"Falling back to manual formatting"
                )

        if self.model_family in self.MANUAL_FORMATS:
            logger.debug(f"Applied manual {self.model_family} formatting")
            return self.MANUAL_FORMATS[self.model_family](system_prompt, turns)

        transcript = "\n".join(f"{t['role']}: {t['content']}" for t in turns)
        return f"{system_prompt}\n\n{transcript}\nassistant:"

    def get_info(self) -> dict:
        return {
            "model_name": self.model_name,
            "model_family": self.model_family,
            "has_chat_template": self.has_chat_template,
            "formatting_method": (
                "tokenizer_template" if self.has_chat_template
                else "manual" if self.model_family in self.MANUAL_FORMATS
                else "transcript"
            )
        }
