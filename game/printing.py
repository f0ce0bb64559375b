from django.utils import timezone
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import cm
from reportlab.pdfgen import canvas

CARD_WIDTH = 8 * cm
CARD_HEIGHT = 10 * cm
LEFT_MARGIN = 2 * cm
TOP_MARGIN = 5 * cm
BOTTOM_MARGIN = 2 * cm
GAP = 1 * cm


def render_qr_sheet(hunt, stream):
    """Write a printable PDF with one card per treasure QR code into ``stream``.

    Cards are laid out two per row. Treasures are printed in ordinal order so
    organizers can hide them along the trail.
    """
    pdf = canvas.Canvas(stream, pagesize=A4)
    width, height = A4
    first_row_y = height - TOP_MARGIN - CARD_HEIGHT

    pdf.setFont("Helvetica-Bold", 24)
    pdf.drawString(LEFT_MARGIN, height - 3 * cm, f"Hunt: {hunt.title}")
    pdf.setFont("Helvetica", 12)
    pdf.drawString(LEFT_MARGIN, height - 4 * cm, f"Generated on {timezone.now().strftime('%Y-%m-%d')}")

    x, y = LEFT_MARGIN, first_row_y
    printed = 0
    for treasure in hunt.treasures.order_by('ordinal'):
        if not treasure.qr_code:
            continue

        pdf.rect(x, y, CARD_WIDTH, CARD_HEIGHT)
        pdf.setFont("Helvetica-Bold", 16)
        pdf.drawString(x + 0.5 * cm, y + CARD_HEIGHT - 1 * cm, f"Treasure #{treasure.ordinal}")
        if treasure.name:
            pdf.setFont("Helvetica", 12)
            pdf.drawString(x + 0.5 * cm, y + CARD_HEIGHT - 1.5 * cm, treasure.name)
        pdf.drawImage(treasure.qr_code.path, x + 1 * cm, y + 2 * cm, width=6 * cm, height=6 * cm)
        pdf.setFont("Helvetica", 7)
        pdf.drawString(x + 0.5 * cm, y + 1 * cm, treasure.scan_token)
        printed += 1

        x += CARD_WIDTH + GAP
        if x > width - (CARD_WIDTH + GAP):
            x = LEFT_MARGIN
            y -= CARD_HEIGHT + GAP
        if y < BOTTOM_MARGIN:
            pdf.showPage()
            x, y = LEFT_MARGIN, first_row_y

    pdf.showPage()
    pdf.save()
    return printed
