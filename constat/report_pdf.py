from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Sequence, Tuple, Union
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas
from reportlab.platypus import KeepTogether, PageBreak, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from constat import settings
from constat.building_store import TECHNICAL_ELEMENT_LABELS
from constat.material_store import warranty_state
from constat.storage import slugify

MISSION_TYPE_LABELS = {
    "inspection": "Inspection",
    "maintenance": "Maintenance",
    "audit": "Audit",
    "emergency": "Urgence",
}
PRIORITY_LABELS = {"low": "Faible", "medium": "Moyenne", "high": "Élevée", "urgent": "Urgente"}
STATUS_LABELS = {
    "draft": "Brouillon",
    "assigned": "Assignée",
    "in_progress": "En cours",
    "completed": "Terminée",
    "cancelled": "Annulée",
}
CONDITION_LABELS = {"bon": "Bon", "acceptable": "Acceptable", "vetuste": "Vétuste"}
MATERIAL_STATUS_LABELS = {
    "operational": "Opérationnel",
    "maintenance": "En maintenance",
    "out_of_order": "Hors service",
    "retired": "Retiré",
}

FOOTER_TEXT = "Rapport généré automatiquement par le système de gestion des missions"

Rows = List[Tuple[str, str]]


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_number(value: Any, max_decimals: int = 2) -> str:
    """French style: space thousands separator, comma decimals, trailing zeros dropped."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return "0"
    text = f"{number:,.{max_decimals}f}"
    integer, _, fraction = text.partition(".")
    integer = integer.replace(",", " ")
    fraction = fraction.rstrip("0")
    if integer in {"-0", "-"}:
        integer = "0"
    return f"{integer},{fraction}" if fraction else integer


def format_currency(value: Any, currency: Optional[str] = None) -> str:
    return f"{format_number(value)} {currency or settings.CURRENCY}"


def format_date(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%d/%m/%Y")
    if isinstance(value, date):
        return value.strftime("%d/%m/%Y")
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).strftime("%d/%m/%Y")
    except ValueError:
        return text


def capitalize_first(text: Optional[str]) -> str:
    if not text:
        return ""
    return text[0].upper() + text[1:]


def report_filename(title: str) -> str:
    return f"rapport_{slugify(title)}.pdf"


# ---------------------------------------------------------------------------
# Page furniture
# ---------------------------------------------------------------------------


def _numbered_canvas(generated_at: datetime):
    footer_date = generated_at.strftime("%d/%m/%Y à %H:%M:%S")

    class NumberedCanvas(canvas.Canvas):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self._saved_page_states: List[Dict[str, Any]] = []

        def showPage(self):
            self._saved_page_states.append(dict(self.__dict__))
            self._startPage()

        def save(self):
            total = len(self._saved_page_states)
            for number, state in enumerate(self._saved_page_states, start=1):
                self.__dict__.update(state)
                self._draw_footer(number, total)
                super().showPage()
            super().save()

        def _draw_footer(self, number: int, total: int) -> None:
            width, _ = A4
            self.setFont("Helvetica", 8)
            self.setFillColor(colors.HexColor("#5f6c7b"))
            self.drawCentredString(width / 2, 14 * mm, f"Page {number} / {total}")
            if number == total:
                self.drawCentredString(width / 2, 10 * mm, FOOTER_TEXT)
                self.drawCentredString(width / 2, 6.5 * mm, footer_date)

    return NumberedCanvas


def _styles() -> Dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    return {
        "h1": ParagraphStyle(
            "ReportTitle",
            parent=base["Title"],
            fontSize=20,
            leading=24,
            textColor=colors.HexColor("#0b1724"),
        ),
        "h2": ParagraphStyle(
            "MissionTitle",
            parent=base["Heading2"],
            alignment=1,
            fontSize=14,
            leading=18,
            textColor=colors.HexColor("#1f2c3a"),
        ),
        "h3": ParagraphStyle(
            "Section",
            parent=base["Heading3"],
            fontSize=13,
            leading=16,
            spaceBefore=6,
            spaceAfter=4,
            textColor=colors.HexColor("#0b3d91"),
        ),
        "h4": ParagraphStyle(
            "SubSection",
            parent=base["Heading4"],
            fontSize=11,
            leading=14,
            spaceBefore=4,
            spaceAfter=2,
            textColor=colors.HexColor("#1f2c3a"),
        ),
        "subtitle": ParagraphStyle(
            "Subtitle",
            parent=base["Normal"],
            alignment=1,
            fontSize=9,
            textColor=colors.HexColor("#5f6c7b"),
        ),
        "label": ParagraphStyle(
            "Label",
            parent=base["Normal"],
            fontSize=9,
            textColor=colors.HexColor("#1f2c3a"),
        ),
        "value": ParagraphStyle(
            "Value",
            parent=base["Normal"],
            fontSize=10,
            leading=13,
            textColor=colors.HexColor("#0b1724"),
        ),
        "bullet": ParagraphStyle(
            "Bullet",
            parent=base["Normal"],
            fontSize=10,
            leading=13,
            leftIndent=5 * mm,
            textColor=colors.HexColor("#0b1724"),
        ),
    }


def _p(text: Any, style: ParagraphStyle) -> Paragraph:
    return Paragraph(escape(str(text)).replace("\n", "<br/>"), style)


def _table(rows: Rows, styles: Dict[str, ParagraphStyle]) -> Table:
    data = [[_p(label, styles["label"]), _p(value, styles["value"])] for label, value in rows]
    table = Table(data, colWidths=[60 * mm, None])
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (0, -1), colors.HexColor("#eef2f7")),
                ("BOX", (0, 0), (-1, -1), 0.35, colors.HexColor("#c3cbd6")),
                ("INNERGRID", (0, 0), (-1, -1), 0.25, colors.HexColor("#d7dde7")),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("LEFTPADDING", (0, 0), (-1, -1), 6),
                ("RIGHTPADDING", (0, 0), (-1, -1), 8),
                ("TOPPADDING", (0, 0), (-1, -1), 3),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
            ]
        )
    )
    return table


def _block(story: List[Any], title: str, rows: Rows, styles: Dict[str, ParagraphStyle]) -> None:
    if not rows:
        return
    story.append(KeepTogether([_p(title, styles["h4"]), _table(rows, styles)]))
    story.append(Spacer(1, 2 * mm))


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


def _building_section(index: int, building: Dict[str, Any], styles: Dict[str, ParagraphStyle]) -> List[Any]:
    story: List[Any] = [_p(f"#{index} – {building.get('designation') or ''}", styles["h3"])]
    _block(
        story,
        "Informations générales",
        [
            ("Désignation:", building.get("designation") or ""),
            ("Statut:", "Actif" if building.get("is_active", True) else "Inactif"),
            ("Créé le:", format_date(building.get("created_at"))),
            ("Dernière mise à jour:", format_date(building.get("updated_at"))),
        ],
        styles,
    )

    surfaces: Rows = []
    for field, label in (
        ("basement_area_sqm", "Surface sous-sol:"),
        ("ground_floor_area_sqm", "Surface RDC:"),
        ("first_floor_area_sqm", "Surface 1er étage:"),
    ):
        if building.get(field) is not None:
            surfaces.append((label, f"{format_number(building[field])} m²"))
    if building.get("total_area"):
        surfaces.append(("Surface totale:", f"{format_number(building['total_area'])} m²"))
    _block(story, "Surfaces développées", surfaces, styles)

    properties: Rows = []
    if building.get("contiguity") and building["contiguity"] != "neant":
        properties.append(("Contiguïté:", building["contiguity"]))
    if building.get("communication") and building["communication"] != "neant":
        properties.append(("Communication:", building["communication"]))
    _block(story, "Propriétés", properties, styles)

    financial: Rows = []
    if building.get("new_value_mad") is not None:
        financial.append(("Valeur à neuf:", format_currency(building["new_value_mad"])))
    if building.get("obsolescence_percentage") is not None:
        financial.append(("Pourcentage de vétusté:", f"{format_number(building['obsolescence_percentage'])}%"))
    if building.get("depreciated_value_mad") is not None:
        financial.append(("Valeur vétustée déduite:", format_currency(building["depreciated_value_mad"])))
    _block(story, "Valeurs financières", financial, styles)

    technical = building.get("technical_elements") or {}
    lines = []
    for key, value in technical.items():
        label = TECHNICAL_ELEMENT_LABELS.get(key, key)
        if isinstance(value, (list, tuple)) and value:
            lines.append(f"• {label}: {', '.join(str(item) for item in value)}")
        elif isinstance(value, str) and value.strip():
            lines.append(f"• {label}: {value}")
    if lines:
        story.append(_p("Éléments techniques", styles["h4"]))
        story.extend(_p(line, styles["bullet"]) for line in lines)
        story.append(Spacer(1, 2 * mm))

    miscellaneous = building.get("miscellaneous_elements") or []
    if miscellaneous:
        story.append(_p(f"Éléments divers ({len(miscellaneous)} éléments)", styles["h4"]))
        story.extend(_p(f"{number}. {item}", styles["bullet"]) for number, item in enumerate(miscellaneous, start=1))
        story.append(Spacer(1, 2 * mm))
    story.append(Spacer(1, 5 * mm))
    return story


def _material_section(
    index: int,
    material: Dict[str, Any],
    building: Dict[str, Any],
    styles: Dict[str, ParagraphStyle],
    today: date,
) -> List[Any]:
    story: List[Any] = [_p(f"#{index} – {material.get('name') or ''}", styles["h4"])]
    _block(
        story,
        "Informations de base",
        [
            ("Désignation:", material.get("name") or ""),
            ("Catégorie:", material.get("category") or "Non spécifiée"),
            ("Localisation (bâtiment):", building.get("designation") or ""),
            ("Statut:", "Actif" if material.get("is_active", True) else "Inactif"),
            ("Créé le:", format_date(material.get("created_at"))),
            ("Dernière mise à jour:", format_date(material.get("updated_at"))),
        ],
        styles,
    )

    technical: Rows = []
    if material.get("brand"):
        technical.append(("Marque:", material["brand"]))
    if material.get("model"):
        technical.append(("Modèle:", material["model"]))
    if material.get("serial_number"):
        technical.append(("Numéro de série:", material["serial_number"]))
    if material.get("quantity") is not None:
        technical.append(("Quantité:", format_number(material["quantity"])))
    if material.get("manufacturing_year") is not None:
        technical.append(("Année de fabrication:", str(material["manufacturing_year"])))
    _block(story, "Détails techniques", technical, styles)

    state: Rows = []
    if material.get("condition"):
        state.append(("État du matériel:", CONDITION_LABELS.get(material["condition"], material["condition"])))
    if material.get("status"):
        state.append(("Statut opérationnel:", MATERIAL_STATUS_LABELS.get(material["status"], material["status"])))
    _block(story, "État et statut", state, styles)

    financial: Rows = []
    if material.get("new_value_mad") is not None:
        financial.append(("Valeur à neuf:", format_currency(material["new_value_mad"])))
    if material.get("obsolescence_percentage") is not None:
        financial.append(("Pourcentage de vétusté:", f"{format_number(material['obsolescence_percentage'])}%"))
    if material.get("depreciated_value_mad") is not None:
        financial.append(("Valeur après vétusté:", format_currency(material["depreciated_value_mad"])))
    _block(story, "Valeurs financières", financial, styles)

    dates: Rows = []
    if material.get("installation_date"):
        dates.append(("Date d'installation:", format_date(material["installation_date"])))
    warranty = warranty_state(material, today=today)
    if warranty:
        marker = "(EXPIRÉE)" if warranty == "expired" else "(ACTIVE)"
        dates.append(("Fin de garantie:", f"{format_date(material['warranty_end_date'])} {marker}"))
    _block(story, "Dates importantes", dates, styles)

    location: Rows = []
    if material.get("location_details"):
        location.append(("Localisation détaillée:", material["location_details"]))
    if material.get("maintenance_notes"):
        location.append(("Notes de maintenance:", material["maintenance_notes"]))
    _block(story, "Localisation et notes", location, styles)

    specifications = {key: value for key, value in (material.get("specifications") or {}).items() if value}
    if specifications:
        story.append(_p("Spécifications techniques", styles["h4"]))
        story.extend(_p(f"• {key}: {value}", styles["bullet"]) for key, value in specifications.items())
        story.append(Spacer(1, 2 * mm))
    story.append(Spacer(1, 3 * mm))
    return story


def summary_rows(buildings: Sequence[Dict[str, Any]], materials: Sequence[Dict[str, Any]]) -> Rows:
    total_surface = sum(float(b.get("total_area") or 0) for b in buildings)
    total_new = sum(float(b.get("new_value_mad") or 0) for b in buildings) + sum(
        float(m.get("new_value_mad") or 0) for m in materials
    )
    total_depreciated = sum(float(b.get("depreciated_value_mad") or 0) for b in buildings) + sum(
        float(m.get("depreciated_value_mad") or 0) for m in materials
    )
    return [
        ("Nombre total de bâtiments:", format_number(len(buildings))),
        ("Nombre total de matériels:", format_number(len(materials))),
        ("Surface totale des bâtiments:", f"{format_number(total_surface)} m²"),
        ("Valeur totale à neuf:", format_currency(total_new)),
        ("Valeur totale après vétusté:", format_currency(total_depreciated)),
        ("Différence (vétusté):", format_currency(total_new - total_depreciated)),
    ]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def generate_mission_report(
    out: Union[Path, BinaryIO],
    *,
    mission: Dict[str, Any],
    buildings: Sequence[Dict[str, Any]],
    materials: Sequence[Dict[str, Any]],
    generated_at: Optional[datetime] = None,
) -> Union[Path, BinaryIO]:
    """Render the report to a file path or to an open binary stream."""
    if isinstance(out, (str, Path)):
        out = Path(out)
        out.parent.mkdir(parents=True, exist_ok=True)
        target: Any = str(out)
    else:
        target = out
    generated_at = generated_at or datetime.now()
    styles = _styles()

    doc = SimpleDocTemplate(
        target,
        pagesize=A4,
        leftMargin=20 * mm,
        rightMargin=20 * mm,
        topMargin=20 * mm,
        bottomMargin=25 * mm,
        title=f"Rapport de mission - {mission.get('title') or ''}",
    )

    story: List[Any] = [
        _p("RAPPORT DE MISSION", styles["h1"]),
        _p(capitalize_first(mission.get("title")), styles["h2"]),
        _p(f"Généré le {generated_at.strftime('%d/%m/%Y à %H:%M')}", styles["subtitle"]),
        Spacer(1, 8 * mm),
        _p("INFORMATIONS PRINCIPALES", styles["h3"]),
        _table(
            [
                ("Nom de la mission:", capitalize_first(mission.get("title"))),
                ("Type de mission:", MISSION_TYPE_LABELS.get(mission.get("mission_type"), mission.get("mission_type") or "")),
                ("Priorité:", PRIORITY_LABELS.get(mission.get("priority"), mission.get("priority") or "")),
                ("Statut:", STATUS_LABELS.get(mission.get("status"), mission.get("status") or "")),
                ("Date de la mission:", format_date(mission.get("scheduled_start_date")) or "Non définie"),
            ],
            styles,
        ),
        Spacer(1, 5 * mm),
    ]

    if mission.get("description"):
        story += [_p("DESCRIPTION", styles["h3"]), _p(mission["description"], styles["value"]), Spacer(1, 4 * mm)]
    if mission.get("instructions"):
        story += [_p("INSTRUCTIONS SPÉCIALES", styles["h3"]), _p(mission["instructions"], styles["value"]), Spacer(1, 4 * mm)]
    if mission.get("plan_de_masse_url"):
        size = mission.get("plan_de_masse_size")
        story += [
            _p("PLAN DE MASSE", styles["h3"]),
            _table(
                [
                    ("Nom du fichier:", mission.get("plan_de_masse_filename") or ""),
                    ("Taille:", f"{int(size) / 1024 / 1024:.2f} MB" if size else "Non spécifiée"),
                    ("Date d'upload:", format_date(mission.get("plan_de_masse_uploaded_at")) or "Non spécifiée"),
                ],
                styles,
            ),
        ]

    story.append(PageBreak())
    story.append(_p(f"BÂTIMENTS ({len(buildings)})", styles["h3"]))
    if not buildings:
        story.append(_p("Aucun bâtiment associé à cette mission.", styles["value"]))
    for index, building in enumerate(buildings, start=1):
        story.extend(_building_section(index, building, styles))

    story.append(Spacer(1, 6 * mm))
    story.append(_p(f"MATÉRIELS ({len(materials)})", styles["h3"]))
    if not materials:
        story.append(_p("Aucun matériel associé à cette mission.", styles["value"]))
    else:
        today = generated_at.date()
        for building in buildings:
            grouped = [m for m in materials if m.get("building_id") == building.get("id")]
            if not grouped:
                continue
            story.append(_p(f"Matériels pour : {building.get('designation') or ''} ({len(grouped)})", styles["h4"]))
            for index, material in enumerate(grouped, start=1):
                story.extend(_material_section(index, material, building, styles, today))

    if mission.get("report"):
        story += [Spacer(1, 6 * mm), _p("RAPPORT DE MISSION", styles["h3"]), _p(mission["report"], styles["value"])]

    story += [
        Spacer(1, 6 * mm),
        _p("RÉSUMÉ STATISTIQUE", styles["h3"]),
        _table(summary_rows(buildings, materials), styles),
    ]

    doc.build(story, canvasmaker=_numbered_canvas(generated_at))
    return out
