import base64
import io
import secrets
import string
from dataclasses import dataclass

from PIL import Image, ImageDraw, ImageFont

# Characters that are easy to confuse when rendered are left out.
CAPTCHA_ALPHABET = "".join(
    ch for ch in string.ascii_letters + string.digits if ch not in "0Oo1Iil"
)
IMAGE_SIZE = (120, 40)
NOISE_LINES = 4


@dataclass(frozen=True)
class Captcha:
    text: str
    image_data_uri: str


def _random_color(low: int, high: int) -> tuple[int, int, int]:
    span = high - low
    return tuple(low + secrets.randbelow(span) for _ in range(3))  # type: ignore[return-value]


class CaptchaGenerator:
    def __init__(self, length: int = 4) -> None:
        self.length = max(int(length), 1)
        self._font = ImageFont.load_default()

    def random_text(self) -> str:
        return "".join(secrets.choice(CAPTCHA_ALPHABET) for _ in range(self.length))

    def render(self, text: str) -> bytes:
        width, height = IMAGE_SIZE
        image = Image.new("RGB", IMAGE_SIZE, _random_color(220, 255))
        draw = ImageDraw.Draw(image)

        for _ in range(NOISE_LINES):
            start = (secrets.randbelow(width), secrets.randbelow(height))
            end = (secrets.randbelow(width), secrets.randbelow(height))
            draw.line([start, end], fill=_random_color(120, 200), width=1)

        step = width // (len(text) + 1)
        for idx, ch in enumerate(text):
            x = step * (idx + 1) - 4 + secrets.randbelow(5) - 2
            y = height // 2 - 6 + secrets.randbelow(7) - 3
            draw.text((x, y), ch, fill=_random_color(0, 100), font=self._font)

        buf = io.BytesIO()
        image.save(buf, format="PNG")
        return buf.getvalue()

    def create(self) -> Captcha:
        text = self.random_text()
        encoded = base64.b64encode(self.render(text)).decode("ascii")
        return Captcha(text=text, image_data_uri=f"data:image/png;base64,{encoded}")
