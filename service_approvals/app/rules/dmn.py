"""
DMN 1.3 XML rendering for compiled decision documents.
"""

import re
import xml.etree.ElementTree as ET
from typing import Any

from .expressions import format_literal
from .models import DecisionDocument
from .validator import ensure_valid


DMN_NAMESPACE = "https://www.omg.org/spec/DMN/20191111/MODEL/"
CAMUNDA_NAMESPACE = "http://camunda.org/schema/1.0/dmn"
EXPORTER = "plan-approvals"


def render_dmn_xml(document: DecisionDocument) -> str:
    """Render a validated document as DMN XML.

    Element ids are derived from the decision id and row position, so the
    same document always renders to the same text.
    """
    ensure_valid(document)
    key = _xml_id(document.decision_id)

    definitions = ET.Element("definitions", {
        "xmlns": DMN_NAMESPACE,
        "xmlns:camunda": CAMUNDA_NAMESPACE,
        "id": f"definitions_{key}",
        "name": "Eligibility Rules",
        "namespace": CAMUNDA_NAMESPACE,
        "exporter": EXPORTER,
        "exporterVersion": "1.0.0",
    })
    decision = ET.SubElement(definitions, "decision", {"id": key, "name": document.name})
    table = ET.SubElement(decision, "decisionTable", {
        "id": f"decisionTable_{key}",
        "hitPolicy": document.hit_policy.value,
    })

    input_element = ET.SubElement(table, "input", {
        "id": f"input_{key}",
        "label": document.input_label or document.input_expression,
    })
    input_expression = ET.SubElement(input_element, "inputExpression", {
        "id": f"inputExpression_{key}",
        "typeRef": "Any",
    })
    ET.SubElement(input_expression, "text").text = document.input_expression

    output = ET.SubElement(table, "output", {
        "id": f"output_{key}",
        "label": document.output_name.title(),
        "name": document.output_name,
        "typeRef": _type_ref(document.rows[0].outcome),
    })
    if document.output_priority:
        values = ET.SubElement(output, "outputValues", {"id": f"outputValues_{key}"})
        ET.SubElement(values, "text").text = ",".join(format_literal(v) for v in document.output_priority)

    for index, row in enumerate(document.rows, start=1):
        rule = ET.SubElement(table, "rule", {"id": f"rule_{key}_{index}"})
        if row.description:
            ET.SubElement(rule, "description").text = row.description
        entry = ET.SubElement(rule, "inputEntry", {"id": f"inputEntry_{key}_{index}"})
        ET.SubElement(entry, "text").text = "-" if row.is_default else row.condition
        outcome = ET.SubElement(rule, "outputEntry", {"id": f"outputEntry_{key}_{index}"})
        ET.SubElement(outcome, "text").text = format_literal(row.outcome)

    ET.indent(definitions, space="  ")
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(definitions, encoding="unicode")


def dmn_file_name(document: DecisionDocument) -> str:
    return f"{re.sub(r'[^A-Za-z0-9]', '_', document.name)}_{_xml_id(document.decision_id)}.dmn"


def _xml_id(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_.-]", "_", value)
    return cleaned if re.match(r"[A-Za-z_]", cleaned) else f"_{cleaned}"


def _type_ref(outcome: Any) -> str:
    if isinstance(outcome, bool):
        return "boolean"
    if isinstance(outcome, int):
        return "integer"
    if isinstance(outcome, float):
        return "double"
    return "string"
