import xml.etree.ElementTree as ET

MAX_NODES = 35


def summarize_ui(xml: str) -> str:
    """Deterministic text summary of a uiautomator dump.

    Cheaper than a screenshot for "is there a close button?" questions. Video
    feeds often refuse to dump while playing, so an empty dump is normal and
    the model is told to fall back to analyze_screen.
    """
    if not xml or "<node" not in xml:
        return "UI dump: (empty/unavailable, use analyze_screen instead)"

    try:
        root = ET.fromstring(xml)
    except ET.ParseError:
        return "UI dump: (parse failed, use analyze_screen instead)"

    nodes = []
    for node in root.iter("node"):
        if node.attrib.get("enabled") == "false":
            continue
        text = (node.attrib.get("text") or "").strip()
        desc = (node.attrib.get("content-desc") or "").strip()
        rid = (node.attrib.get("resource-id") or "").strip()
        clickable = node.attrib.get("clickable") == "true"
        bounds = (node.attrib.get("bounds") or "").strip()

        # Keep nodes that are likely useful to an agent.
        if clickable or text or desc:
            nodes.append((clickable, text, desc, rid, bounds))

    if not nodes:
        return "UI dump: no labelled or clickable nodes"

    # Prefer clickable nodes, then nodes with labels.
    nodes.sort(key=lambda t: (not t[0], not bool(t[1] or t[2])))

    parts = ["UI nodes (clickable first):"]
    for i, (clickable, text, desc, rid, bounds) in enumerate(nodes[:MAX_NODES], start=1):
        label = text or desc or "(no label)"
        flag = "clickable" if clickable else "-"
        parts.append(f"{i:02d}. {flag} | {label} | id={rid or '-'} | bounds={bounds or '-'}")
    if len(nodes) > MAX_NODES:
        parts.append(f"... {len(nodes) - MAX_NODES} more")
    return "\n".join(parts)
