"""Purchase receipts. Pure formatting: no network, works offline."""

import re
from datetime import date
from typing import List, NamedTuple, Optional

from fpdf import FPDF

MANUAL_ACCESS_NOTICE = "Contact support via Telegram for access"

LINK_INSTRUCTIONS = [
    "1. Copy the link above and paste it in your browser",
    "2. The link will take you to your purchased content",
    "3. This link is for your personal use only",
    "4. Do not share this link with others",
]

MANUAL_INSTRUCTIONS = [
    "1. Contact support via Telegram to get access to your content",
    "2. Provide your purchase details when contacting support",
    "3. Support will provide you with access instructions",
]


class Receipt(NamedTuple):
    brand: str
    title: str
    purchase_date: date
    price: float
    product_link: Optional[str]

    @property
    def access_line(self) -> str:
        return self.product_link or MANUAL_ACCESS_NOTICE

    @property
    def instructions(self) -> List[str]:
        return LINK_INSTRUCTIONS if self.product_link else MANUAL_INSTRUCTIONS

    @property
    def filename(self) -> str:
        name = re.sub(r"[^A-Za-z0-9._-]+", "-", f"{self.brand.upper()}-Receipt-{self.title}").strip("-")
        return f"{name}.pdf"

    def lines(self) -> List[str]:
        return [
            self.brand.upper(),
            "Purchase Receipt",
            f"Video: {self.title}",
            f"Purchase Date: {self.purchase_date.strftime('%B')} {self.purchase_date.day}, {self.purchase_date.year}",
            f"Price: ${self.price:.2f}",
            "Your Product Link:",
            self.access_line,
            "Instructions:",
            *self.instructions,
            "Thank you for your purchase!",
            f"(c) {self.brand.upper()} - All Rights Reserved",
        ]


def _latin1(text: str) -> str:
    # core PDF fonts only cover latin-1
    return text.encode("latin-1", "replace").decode("latin-1")


def render_pdf(receipt: Receipt) -> bytes:
    pdf = FPDF()
    pdf.add_page()

    pdf.set_font("Helvetica", "B", 22)
    pdf.set_text_color(229, 9, 20)
    pdf.cell(0, 12, _latin1(receipt.brand.upper()), align="C", new_x="LMARGIN", new_y="NEXT")
    pdf.set_font("Helvetica", "", 16)
    pdf.set_text_color(0, 0, 0)
    pdf.cell(0, 10, "Purchase Receipt", align="C", new_x="LMARGIN", new_y="NEXT")
    pdf.set_draw_color(200, 200, 200)
    pdf.line(20, pdf.get_y() + 2, 190, pdf.get_y() + 2)
    pdf.ln(8)

    body = receipt.lines()
    pdf.set_font("Helvetica", "", 14)
    for line in body[2:6]:
        pdf.multi_cell(0, 9, _latin1(line), new_x="LMARGIN", new_y="NEXT")

    pdf.set_draw_color(229, 9, 20)
    pdf.set_fill_color(245, 245, 245)
    pdf.set_font("Helvetica", "", 12)
    pdf.multi_cell(0, 12, _latin1(receipt.access_line), border=1, fill=True, new_x="LMARGIN", new_y="NEXT")
    pdf.ln(6)

    pdf.set_text_color(80, 80, 80)
    pdf.cell(0, 9, "Instructions:", new_x="LMARGIN", new_y="NEXT")
    for line in receipt.instructions:
        pdf.cell(0, 9, _latin1(line), new_x="LMARGIN", new_y="NEXT")

    pdf.ln(12)
    pdf.set_font("Helvetica", "", 10)
    pdf.set_text_color(120, 120, 120)
    for line in body[-2:]:
        pdf.cell(0, 6, _latin1(line), align="C", new_x="LMARGIN", new_y="NEXT")

    return bytes(pdf.output())
