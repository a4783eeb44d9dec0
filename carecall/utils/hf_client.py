"""
HuggingFace Client - Model loading and inference wrappers

Responsibilities:
- Load a causal LM (optionally 4-bit quantized) and generate chat replies
- Generate JSON-formatted completions with repair
- Load a sentence-embedding model and embed text (mean pooling)
- Handle CUDA errors
- Optional diagnostics (token counts, latency)

Design principles:
- Dependency injection (no singleton)
- Fail fast on critical errors (CUDA OOM, missing CUDA)
- Model-agnostic (chat formatting lives in PromptFormatter)
"""

import logging
import time
from typing import Any, Dict, List, Optional, Union

import torch
from transformers import (
    AutoModel,
    AutoModelForCausalLM,
    AutoTokenizer,
    BitsAndBytesConfig
)

from carecall.utils.prompt_formatter import PromptFormatter

logger = logging.getLogger(__name__)

DEVICE_CUDA = "cuda"
DEVICE_CPU = "cpu"
DEVICE_MAP_AUTO = "auto"


def repair_json(text: str) -> str:
    """
    Attempt to repair common JSON formatting issues in model output

    Only handles dict output (not arrays). Strips markdown fences, trims to
    the outermost braces and balances unmatched closing braces.

    Args:
        text: Raw LLM output

    Returns:
        str: Cleaned JSON string (may still fail json.loads)

    Examples:
        >>> repair_json('```json\\n{"response": "hi", "is_end_call_detected": false}\\n```')
        '{"response": "hi", "is_end_call_detected": false}'
    """
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    first_brace = text.find('{')
    last_brace = text.rfind('}')

    if first_brace == -1:
        logger.warning("No braces found in JSON repair")
        return text
    if last_brace < first_brace:
        # Truncated output: keep everything from the first brace
        text = text[first_brace:]
    else:
        text = text[first_brace:last_brace + 1]

    # Naive balancing - doesn't handle strings containing braces
    open_count = text.count('{')
    close_count = text.count('}')

    if open_count > close_count:
        missing = open_count - close_count
        text += '}' * missing
        logger.debug(f"Added {missing} closing braces")
    elif close_count > open_count:
        diff = close_count - open_count
        for _ in range(diff):
            last_close = text.rfind('}')
            if last_close != -1:
                text = text[:last_close] + text[last_close + 1:]
        logger.debug(f"Removed {diff} extra closing braces")

    return text


class HuggingFaceClient:
    """Wrapper for HuggingFace chat model inference"""

    def __init__(
        self,
        model_name: str,
        load_in_4bit: bool = True,
        device: str = DEVICE_CUDA,
    ) -> None:
        """
        Initialize model and tokenizer

        Args:
            model_name: HuggingFace model identifier
            load_in_4bit: Use 4-bit quantization (CUDA only, saves VRAM)
            device: Device to use ("cuda" or "cpu")

        Raises:
            RuntimeError: If CUDA requested but not available
            Exception: If model loading fails
        """
        self.model_name = model_name
        self.device = device

        if device == DEVICE_CUDA and not torch.cuda.is_available():
            raise RuntimeError("CUDA requested but not available. Check nvidia-smi.")

        logger.info(f"Loading model: {model_name}")
        logger.info(f"4-bit quantization: {load_in_4bit}, device: {device}")

        quantization_config = None
        if load_in_4bit and device == DEVICE_CUDA:
            quantization_config = BitsAndBytesConfig(
                load_in_4bit=True,
                bnb_4bit_quant_type="nf4",
                bnb_4bit_compute_dtype=torch.bfloat16,
                bnb_4bit_use_double_quant=True
            )
            logger.info("Using NF4 quantization with bfloat16 compute")

        try:
            self.tokenizer = AutoTokenizer.from_pretrained(model_name)
            if self.tokenizer.pad_token is None:
                if self.tokenizer.eos_token is not None:
                    self.tokenizer.pad_token = self.tokenizer.eos_token
                    logger.info("Set pad_token to eos_token")
                else:
                    self.tokenizer.add_special_tokens({'pad_token': '[PAD]'})
                    logger.warning("Added new [PAD] token as pad_token")
        except Exception as e:
            logger.error(f"Failed to load tokenizer: {e}")
            raise

        self.formatter = PromptFormatter(model_name, self.tokenizer)
        logger.info(f"Prompt formatter initialized: {self.formatter.get_info()}")

        try:
            self.model = AutoModelForCausalLM.from_pretrained(
                model_name,
                quantization_config=quantization_config,
                device_map=DEVICE_MAP_AUTO if device == DEVICE_CUDA else None,
                torch_dtype=torch.bfloat16 if device == DEVICE_CUDA else torch.float32
            )
            if device == DEVICE_CUDA:
                self._log_cuda_memory("after model load")
        except torch.cuda.OutOfMemoryError:
            logger.error("CUDA Out of Memory during model loading")
            raise
        except Exception as e:
            logger.error(f"Failed to load model: {e}")
            raise

        self.model.eval()
        logger.info("HuggingFace client initialized successfully")

    def _log_cuda_memory(self, stage: str) -> None:
        if self.device == DEVICE_CUDA and torch.cuda.is_available():
            allocated = torch.cuda.memory_allocated() / 1e9
            reserved = torch.cuda.memory_reserved() / 1e9
            logger.info(f"GPU memory {stage}: {allocated:.2f}GB allocated, {reserved:.2f}GB reserved")

    def is_loaded(self) -> bool:
        return self.model is not None and self.tokenizer is not None

    def generate(
        self,
        system_prompt: str,
        messages: Optional[List[Dict[str, str]]] = None,
        max_tokens: int = 256,
        temperature: float = 0.3,
        return_diagnostics: bool = False
    ) -> Union[str, Dict[str, Any]]:
        """
        Generate a reply for a system prompt plus recent messages

        Args:
            system_prompt: Instructions for this call
            messages: Recent {'role', 'content'} messages (oldest first)
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature (0.0 = deterministic)
            return_diagnostics: Include token counts and timing

        Returns:
            str: Generated text (if return_diagnostics=False)
            dict: {'text': str, 'diagnostics': {...}} (if return_diagnostics=True)

        Raises:
            RuntimeError: If model not loaded
            torch.cuda.OutOfMemoryError: If GPU runs out of memory
        """
        if not self.is_loaded():
            raise RuntimeError("Model not loaded")

        start_time = time.time()
        prompt = self.formatter.format_chat(system_prompt, messages or [])

        inputs = self.tokenizer(prompt, return_tensors="pt")
        if self.device == DEVICE_CUDA:
            inputs = inputs.to(DEVICE_CUDA)
        prompt_tokens = inputs.input_ids.shape[1]

        try:
            with torch.no_grad():
                outputs = self.model.generate(
                    inputs.input_ids,
                    attention_mask=inputs.attention_mask,
                    max_new_tokens=max_tokens,
                    temperature=temperature if temperature > 0 else None,
                    do_sample=temperature > 0,
                    pad_token_id=self.tokenizer.pad_token_id
                )
        except torch.cuda.OutOfMemoryError:
            logger.error(f"CUDA OOM during generation (prompt tokens: {prompt_tokens}, max new: {max_tokens})")
            raise

        generated_ids = outputs[0][prompt_tokens:]
        generated_text = self.tokenizer.decode(generated_ids, skip_special_tokens=True).strip()
        elapsed_ms = (time.time() - start_time) * 1000

        logger.debug(f"Generated {len(generated_ids)} tokens in {elapsed_ms:.0f}ms")

        if return_diagnostics:
            completion_tokens = len([t for t in generated_ids if t != self.tokenizer.pad_token_id])
            return {
                "text": generated_text,
                "diagnostics": {
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                    "total_tokens": prompt_tokens + completion_tokens,
                    "latency_ms": elapsed_ms,
                }
            }
        return generated_text

    def generate_json(
        self,
        system_prompt: str,
        messages: Optional[List[Dict[str, str]]] = None,
        max_tokens: int = 256,
        temperature: float = 0.0
    ) -> str:
        """
        Generate JSON-formatted completion with repair

        Note: This returns a string, not parsed JSON. Caller must json.loads().
        """
        text = self.generate(system_prompt, messages, max_tokens=max_tokens, temperature=temperature)
        return repair_json(text)

    def get_model_info(self) -> Dict[str, Any]:
        info = {
            "model_name": self.model_name,
            "device": self.device,
            "is_loaded": self.is_loaded(),
            "formatter": self.formatter.get_info(),
        }
        if self.device == DEVICE_CUDA and torch.cuda.is_available():
            info["gpu_memory_allocated_gb"] = torch.cuda.memory_allocated() / 1e9
        return info


class HuggingFaceEmbedder:
    """Sentence embeddings from a HuggingFace encoder (mean pooling, L2-normalized)"""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
                 device: str = DEVICE_CPU) -> None:
        """
        Raises:
            RuntimeError: If CUDA requested but not available
        """
        if device == DEVICE_CUDA and not torch.cuda.is_available():
            raise RuntimeError("CUDA requested but not available. Check nvidia-smi.")

        self.model_name = model_name
        self.device = device

        logger.info(f"Loading embedding model: {model_name} on {device}")
        self.tokenizer = AutoTokenizer.from_pretrained(model_name)
        self.model = AutoModel.from_pretrained(model_name).to(device)
        self.model.eval()

    def embed(self, text: str) -> List[float]:
        """
        Embed one text snippet.

        Returns:
            list[float]: Unit-length embedding
        """
        inputs = self.tokenizer(text, return_tensors="pt", truncation=True, max_length=256).to(self.device)
        with torch.no_grad():
            outputs = self.model(**inputs)

        mask = inputs.attention_mask.unsqueeze(-1).float()
        summed = (outputs.last_hidden_state * mask).sum(dim=1)
        pooled = summed / mask.sum(dim=1).clamp(min=1e-9)
        normalized = torch.nn.functional.normalize(pooled, p=2, dim=1)
        return normalized[0].cpu().tolist()
