"""
Investment Contract PDF Renderer

Renders the investment contract handed to the stamping provider:
- Page 1: Contract header, investor identity
- Page 2: Investment, payment terms and provisioned asset
- Last page: Signature block with the approved signature image

The stamp is placed on the last page, next to the signature.
"""

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import inch
from reportlab.lib import colors
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Image as RLImage, Table, TableStyle, PageBreak
from reportlab.lib.enums import TA_CENTER
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Any, Optional
from io import BytesIO
import base64
import logging

logger = logging.getLogger(__name__)


@dataclass
class RenderedDocument:
    content: bytes
    page_count: int
    filename: str


def format_currency(amount: Any, currency: str = "IDR") -> str:
    """1500000 -> 'IDR 1.500.000'"""
    try:
        value = int(round(float(amount or 0)))
    except (TypeError, ValueError):
        return f"{currency} -"
    return f"{currency} {value:,}".replace(",", ".")


class ContractPDFRenderer:
    """Generate the investment contract PDF"""

    def __init__(self):
        self.page_width, self.page_height = A4
        self.margin = 0.75 * inch
        self.styles = getSampleStyleSheet()
        self._setup_custom_styles()

    def _setup_custom_styles(self):
        """Setup custom paragraph styles"""
        self.styles.add(ParagraphStyle(
            name='ContractTitle',
            parent=self.styles['Heading1'],
            fontSize=20,
            alignment=TA_CENTER,
            spaceAfter=12,
            textColor=colors.HexColor('#1a365d')
        ))

        self.styles.add(ParagraphStyle(
            name='ContractSubtitle',
            parent=self.styles['Normal'],
            fontSize=12,
            alignment=TA_CENTER,
            spaceAfter=24,
            textColor=colors.HexColor('#4a5568')
        ))

        self.styles.add(ParagraphStyle(
            name='SectionHeader',
            parent=self.styles['Heading2'],
            fontSize=13,
            spaceBefore=16,
            spaceAfter=8,
            textColor=colors.HexColor('#2d3748'),
        ))

        self.styles.add(ParagraphStyle(
            name='ContractBody',
            parent=self.styles['Normal'],
            fontSize=10,
            spaceAfter=6,
            leading=14,
            textColor=colors.HexColor('#2d3748')
        ))

    def render(self, contract_data: Dict[str, Any]) -> RenderedDocument:
        """
        Render the contract.

        Args:
            contract_data: dict with keys contract_number, contract_date,
                investment, investor, asset, payment_terms, signature_data_url

        Returns:
            RenderedDocument with PDF bytes and page count
        """
        buffer = BytesIO()
        pages = []

        def _track_page(canvas, doc):
            pages.append(canvas.getPageNumber())

        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=self.margin,
            leftMargin=self.margin,
            topMargin=self.margin,
            bottomMargin=self.margin,
            title=f"Contract {contract_data.get('contract_number', '')}"
        )

        story = []
        story.extend(self._build_identity_page(contract_data))
        story.append(PageBreak())
        story.extend(self._build_terms_page(contract_data))
        story.append(PageBreak())
        story.extend(self._build_signature_page(contract_data))

        doc.build(story, onFirstPage=_track_page, onLaterPages=_track_page)

        pdf_bytes = buffer.getvalue()
        buffer.close()

        return RenderedDocument(
            content=pdf_bytes,
            page_count=max(pages) if pages else 1,
            filename=self.get_filename(contract_data.get('contract_id') or contract_data.get('contract_number', 'contract'))
        )

    def _table(self, rows: List[List[str]]) -> Table:
        table = Table(rows, colWidths=[2.2*inch, 4.3*inch])
        table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
            ('FONTNAME', (1, 0), (1, -1), 'Helvetica'),
            ('FONTSIZE', (0, 0), (-1, -1), 10),
            ('TEXTCOLOR', (0, 0), (0, -1), colors.HexColor('#4a5568')),
            ('TEXTCOLOR', (1, 0), (1, -1), colors.HexColor('#2d3748')),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
            ('TOPPADDING', (0, 0), (-1, -1), 6),
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
            ('GRID', (0, 0), (-1, -1), 0.5, colors.HexColor('#cbd5e0')),
        ]))
        return table

    def _build_identity_page(self, contract_data: Dict[str, Any]) -> List:
        elements = []

        contract_date = contract_data.get('contract_date')
        if not isinstance(contract_date, datetime):
            contract_date = datetime.utcnow()
        date_str = contract_date.strftime("%d %B %Y")

        elements.append(Paragraph("Plant Investment Contract", self.styles['ContractTitle']))
        elements.append(Paragraph(
            f"No. {contract_data.get('contract_number', '-')} &middot; {date_str}",
            self.styles['ContractSubtitle']
        ))

        investor = contract_data.get('investor') or {}
        elements.append(Paragraph("Investor", self.styles['SectionHeader']))
        elements.append(self._table([
            ['Name:', investor.get('name') or '-'],
            ['NIK:', investor.get('nik') or '-'],
            ['Email:', investor.get('email') or '-'],
            ['Phone:', investor.get('phone_number') or '-'],
            ['Occupation:', investor.get('occupation') or '-'],
            ['Address:', ", ".join(
                part for part in [
                    investor.get('address'), investor.get('village'), investor.get('city'),
                    investor.get('province'), investor.get('postal_code')
                ] if part
            ) or '-'],
        ]))
        return elements

    def _build_terms_page(self, contract_data: Dict[str, Any]) -> List:
        elements = []

        investment = contract_data.get('investment') or {}
        terms = contract_data.get('payment_terms') or {}
        asset = contract_data.get('asset') or {}

        elements.append(Paragraph("Investment", self.styles['SectionHeader']))
        elements.append(self._table([
            ['Product:', investment.get('product_ref') or '-'],
            ['Contract Value:', format_currency(investment.get('total_amount'))],
        ]))

        elements.append(Paragraph("Payment Terms", self.styles['SectionHeader']))
        if terms.get('kind') == 'installment':
            term_rows = [
                ['Payment Type:', 'Installment'],
                ['Installments:', str(terms.get('total_installments') or '-')],
                ['Term:', (terms.get('payment_term') or '-').capitalize()],
            ]
        else:
            term_rows = [['Payment Type:', 'Full payment']]
        if terms.get('duration_years'):
            term_rows.append(['Duration:', f"{terms['duration_years']} years"])
        elements.append(self._table(term_rows))

        elements.append(Paragraph("Asset", self.styles['SectionHeader']))
        if asset:
            elements.append(self._table([
                ['Asset ID:', asset.get('instance_id') or '-'],
                ['Category:', (asset.get('asset_category') or '-').capitalize()],
                ['Location:', asset.get('location') or '-'],
                ['Plot / Block:', f"{asset.get('plot', '-')} / {asset.get('block', '-')}"],
            ]))
        else:
            elements.append(Paragraph("Asset will be assigned after provisioning.", self.styles['ContractBody']))
        return elements

    def _build_signature_page(self, contract_data: Dict[str, Any]) -> List:
        elements = []
        investor = contract_data.get('investor') or {}

        elements.append(Paragraph("Signatures", self.styles['SectionHeader']))
        elements.append(Paragraph(
            "The investor agrees to the terms of this contract.",
            self.styles['ContractBody']
        ))
        elements.append(Spacer(1, 20))

        signature = contract_data.get('signature_data_url') or ''
        if signature:
            try:
                # Remove data URL prefix if present
                if signature.startswith('data:'):
                    signature = signature.split(',')[1] if ',' in signature else signature
                image = RLImage(BytesIO(base64.b64decode(signature)))
                image._restrictSize(2.5 * inch, 1.2 * inch)
                elements.append(image)
            except Exception as e:
                logger.error(f"Failed to process signature image: {e}")
                elements.append(Paragraph("[Signature could not be rendered]", self.styles['ContractBody']))
        else:
            elements.append(Paragraph("[No signature on file]", self.styles['ContractBody']))

        elements.append(Spacer(1, 8))
        elements.append(Paragraph(investor.get('name') or '-', self.styles['ContractBody']))
        return elements

    def get_filename(self, contract_id: str) -> str:
        return f"contract-{contract_id}.pdf"


# Singleton instance
contract_renderer = ContractPDFRenderer()
