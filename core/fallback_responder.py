"""
Deterministic keyword-rule responder used when native inference is unavailable.
"""

from __future__ import annotations

import math
import random
import re
import threading
import time
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from core.streaming import GenerationSink
from utils.logger_util import get_logger

logger = get_logger("core.fallback")

USER_START_TAG = "<|im_start|>user"
TURN_END_TAG = "<|im_end|>"

DEFAULT_QUOTE_LIMIT = 30

_ARITHMETIC_PATTERN = re.compile(r"((?<![\d.])-?\d+\.?\d*)\s*([+\-*/])\s*(-?\d+\.?\d*)")

# Longest phrases first so "multiplied by" wins over a bare "by".
_OPERATOR_WORDS: Sequence[Tuple[str, str]] = (
    ("multiplied by", "*"),
    ("divided by", "/"),
    ("乘以", "*"),
    ("除以", "/"),
    ("times", "*"),
    ("plus", "+"),
    ("minus", "-"),
    ("等于", "="),
    ("加", "+"),
    ("减", "-"),
    ("乘", "*"),
    ("除", "/"),
    ("×", "*"),
    ("÷", "/"),
)

GREETING_KEYWORDS = ("hello", "hi", "hey", "good morning", "good evening", "你好", "您好", "嗨")
IDENTITY_KEYWORDS = ("who are you", "what are you", "your name", "introduce yourself", "你是谁", "你叫什么", "介绍")
WEATHER_KEYWORDS = ("weather", "forecast", "天气")
TIME_KEYWORDS = ("time", "what time", "clock", "几点", "时间", "现在")
DATE_KEYWORDS = ("date", "today", "weekday", "day is it", "日期", "今天", "星期", "周几")
HELP_KEYWORDS = ("help", "what can you do", "features", "capabilities", "帮助", "功能", "能做什么", "你会")
ARITHMETIC_KEYWORDS = (
    "+", "-", "*", "/", "×", "÷",
    "plus", "minus", "times", "multiplied by", "divided by", "calculate", "compute", "equals",
    "等于", "计算", "加", "减", "乘", "除",
)
PROGRAMMING_KEYWORDS = ("code", "coding", "program", "programming", "python", "java", "kotlin", "bug", "代码", "编程", "程序")
GRATITUDE_KEYWORDS = ("thank", "thanks", "thank you", "谢谢", "感谢")


def extract_user_message(prompt: str) -> str:
    """
    Recover the raw user text from a ChatML-wrapped prompt.

    Prompts without the user role wrapper are returned stripped.
    """
    start = prompt.find(USER_START_TAG)
    if start != -1:
        message_start = start + len(USER_START_TAG)
        end = prompt.find(TURN_END_TAG, message_start)
        if end != -1:
            return prompt[message_start:end].strip()
    return prompt.strip()


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    for keyword in keywords:
        if keyword.isascii():
            # Letters may not touch an ASCII keyword, so "hi" does not match "this".
            if re.search(rf"(?<![a-z]){re.escape(keyword)}(?![a-z])", text):
                return True
        elif keyword in text:
            return True
    return False


def _format_number(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return f"{value:.2f}"


def calculate(expression: str) -> str:
    """
    Evaluate the first `number operator number` pattern in `expression`.

    Returns:
        A human-readable result or an explanation of why nothing was computed.
    """
    cleaned = expression.lower()
    for word, symbol in _OPERATOR_WORDS:
        cleaned = cleaned.replace(word, symbol)
    cleaned = cleaned.replace(" ", "")

    match = _ARITHMETIC_PATTERN.search(cleaned)
    if match is None:
        return "Please enter a simple expression, for example 3+5 or 10*2."

    left_text, op, right_text = match.groups()
    left, right = float(left_text), float(right_text)
    if op == "+":
        result = left + right
    elif op == "-":
        result = left - right
    elif op == "*":
        result = left * right
    elif right == 0:
        return "Cannot compute: division by zero is undefined."
    else:
        result = left / right

    if not math.isfinite(result):
        return "Cannot compute: the result is out of range."
    return f"Result: {left_text} {op} {right_text} = {_format_number(result)}"


class FallbackResponder:
    """
    Keyword-rule engine with a fixed precedence.

    Rules are tried in order and the first match wins: greeting, identity,
    weather, time, date, help, arithmetic, programming, gratitude, default.
    """

    def __init__(self, *, clock: Callable[[], datetime] = datetime.now, quote_limit: int = DEFAULT_QUOTE_LIMIT) -> None:
        self._clock = clock
        self._quote_limit = quote_limit
        self._rules: List[Tuple[str, Tuple[str, ...], Callable[[str], str]]] = [
            ("greeting", GREETING_KEYWORDS, lambda _msg: self._greeting()),
            ("identity", IDENTITY_KEYWORDS, lambda _msg: self._identity()),
            ("weather", WEATHER_KEYWORDS, lambda _msg: self._weather()),
            ("time", TIME_KEYWORDS, lambda _msg: f"The current time is {self._clock():%H:%M:%S}."),
            ("date", DATE_KEYWORDS, lambda _msg: f"Today is {self._clock():%A, %B %d, %Y}."),
            ("help", HELP_KEYWORDS, lambda _msg: self._help()),
            ("arithmetic", ARITHMETIC_KEYWORDS, calculate),
            ("programming", PROGRAMMING_KEYWORDS, lambda _msg: self._programming()),
            ("gratitude", GRATITUDE_KEYWORDS, lambda _msg: "You're welcome! Glad I could help. Ask me anything, any time."),
        ]

    def match_rule(self, message: str) -> str:
        """Return the name of the rule that answers `message`."""
        lowered = message.lower()
        for name, keywords, _ in self._rules:
            if _contains_any(lowered, keywords):
                return name
        return "default"

    def respond(self, prompt: str) -> str:
        message = extract_user_message(prompt)
        lowered = message.lower()
        for name, keywords, build in self._rules:
            if _contains_any(lowered, keywords):
                logger.debug("Fallback rule %s matched", name)
                return build(message)
        return self._default(message)

    @staticmethod
    def _greeting() -> str:
        return (
            "Hello! I'm the local AI assistant running on your device.\n\n"
            "Current mode: local fallback responder\n"
            "No network connection needed\n"
            "Your data never leaves the device\n\n"
            "For more capable answers, switch to online mode."
        )

    @staticmethod
    def _identity() -> str:
        return (
            "I'm LocalMind, an AI assistant running on your device.\n\n"
            "Local mode (current):\n"
            "- no network connection needed\n"
            "- basic conversation\n"
            "- your data stays on the device\n\n"
            "Online mode:\n"
            "- uses a cloud AI service\n"
            "- much stronger understanding\n"
            "- needs a network connection and an API key"
        )

    @staticmethod
    def _weather() -> str:
        return (
            "Sorry, I run offline and cannot fetch live weather information.\n\n"
            "You could:\n"
            "- switch to online mode and ask again\n"
            "- check a weather app"
        )

    @staticmethod
    def _help() -> str:
        return (
            "I'm a local AI assistant. I can help with:\n\n"
            "Basic conversation\n"
            "- simple questions\n"
            "- everyday chat\n\n"
            "Time and date\n"
            "- the current time\n"
            "- today's date\n\n"
            "Simple arithmetic\n"
            "- the four basic operations\n\n"
            "Tip: online mode unlocks a far more capable AI."
        )

    @staticmethod
    def _programming() -> str:
        return (
            "Programming questions need a more capable AI.\n\n"
            "Switch to online mode to get:\n"
            "- code generation\n"
            "- code explanations\n"
            "- debugging suggestions"
        )

    def _default(self, message: str) -> str:
        quote = message if len(message) <= self._quote_limit else message[: self._quote_limit] + "..."
        return (
            f'I received your message: "{quote}"\n\n'
            "I'm running in local fallback mode, so my answers are limited.\n\n"
            "You can:\n"
            "- ask for the current time or date\n"
            "- have a simple conversation\n"
            "- switch to online mode for the full AI experience"
        )


class FallbackStreamer:
    """
    Emits a finished response in small chunks to mimic token streaming.

    Chunk sizes and delays come from an injectable `random.Random` and
    `sleep`, so tests can make the stream deterministic and instant.
    """

    def __init__(
        self,
        *,
        rng: Optional[random.Random] = None,
        chunk_range: Tuple[int, int] = (2, 4),
        delay_range: Tuple[float, float] = (0.02, 0.04),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._rng = rng or random.Random()
        self._chunk_range = chunk_range
        self._delay_range = delay_range
        self._sleep = sleep

    def stream(self, text: str, sink: GenerationSink, should_stop: Callable[[], bool]) -> str:
        """
        Stream `text` into `sink`.

        `should_stop` is polled before each chunk; once it reports True no
        further tokens are emitted and `on_complete` receives the prefix
        produced so far.

        Returns:
            The text actually emitted.
        """
        emitted: List[str] = []
        position = 0
        while position < len(text):
            if should_stop():
                logger.info("Fallback stream stopped at %s/%s characters", position, len(text))
                break
            size = self._rng.randint(*self._chunk_range)
            token = text[position : position + size]
            emitted.append(token)
            sink.on_token(token)
            position += size
            delay = self._rng.uniform(*self._delay_range)
            if delay > 0:
                self._sleep(delay)

        result = "".join(emitted)
        sink.on_complete(result)
        return result


class FallbackEngine:
    """
    Responder plus streamer, with the cooperative stop flag of the fallback path.
    """

    def __init__(self, responder: Optional[FallbackResponder] = None, streamer: Optional[FallbackStreamer] = None) -> None:
        self._responder = responder or FallbackResponder()
        self._streamer = streamer or FallbackStreamer()
        self._stop = threading.Event()
        self._generating = threading.Event()

    @property
    def responder(self) -> FallbackResponder:
        return self._responder

    def generate(self, prompt: str, sink: GenerationSink, cancel: Optional[threading.Event] = None) -> None:
        self._stop.clear()
        self._generating.set()
        try:
            text = self._responder.respond(prompt)
            self._streamer.stream(text, sink, lambda: self._stop.is_set() or (cancel is not None and cancel.is_set()))
        except Exception as exc:  # noqa: BLE001 - reported through the sink
            logger.error("Fallback generation failed: %s", exc, exc_info=True)
            sink.on_error(str(exc) or "fallback generation failed")
        finally:
            self._generating.clear()

    def stop(self) -> None:
        self._stop.set()

    def is_generating(self) -> bool:
        return self._generating.is_set()
