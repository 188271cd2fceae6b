"""Captcha-solving capability consumed by the retry orchestrator"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol


@dataclass
class CaptchaInfo:
    """
    What the operation saw of a captcha wall.

    ``kind`` is the provider family ("recaptcha", "hcaptcha", "image", ...);
    ``params`` carries whatever the solver needs (sitekey, page url, image url).
    """

    kind: str
    params: Dict[str, Any] = field(default_factory=dict)


class CaptchaSolver(Protocol):
    async def solve(self, kind: str, params: Dict[str, Any]) -> Optional[str]:
        """Return a token / answer, or None when the captcha could not be solved"""
        ...
