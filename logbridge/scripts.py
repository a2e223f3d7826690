"""In-page JavaScript snippets run through ``Runtime.evaluate`` by the bridge.

Every snippet is an IIFE tagged with a ``// logbridge:<name>`` comment and
receives its arguments as a JSON literal, so no caller-supplied string is
ever spliced into code. Selector syntax errors come back as
``{"invalidSelector": message}`` instead of throwing.
"""

import json

_RESOLVE = """
  let el;
  try {
    el = document.querySelector(__args.selector);
  } catch (e) {
    return { invalidSelector: String(e && e.message || e) };
  }
"""

_VISIBLE = """
  const isVisible = (node) => {
    const style = window.getComputedStyle(node);
    const rect = node.getBoundingClientRect();
    return style.display !== 'none' && style.visibility !== 'hidden'
      && Number(style.opacity) !== 0 && rect.width > 0 && rect.height > 0;
  };
"""

_BODIES = {
    "element_state": _VISIBLE + _RESOLVE + """
  if (!el) return { found: false };
  if (__args.scroll) el.scrollIntoView({ block: 'center', inline: 'center' });
  const rect = el.getBoundingClientRect();
  return {
    found: true,
    visible: isVisible(el),
    x: rect.left + rect.width / 2,
    y: rect.top + rect.height / 2,
    tagName: el.tagName.toLowerCase()
  };
""",
    "focus_element": _RESOLVE + """
  if (!el) return { found: false };
  el.scrollIntoView({ block: 'center', inline: 'center' });
  el.focus();
  if (__args.clear && 'value' in el) {
    el.value = '';
    el.dispatchEvent(new Event('input', { bubbles: true }));
  }
  return { found: true, tagName: el.tagName.toLowerCase() };
""",
    "element_value": _RESOLVE + """
  if (!el) return { found: false };
  el.dispatchEvent(new Event('change', { bubbles: true }));
  return { found: true, value: 'value' in el ? el.value : el.textContent };
""",
    "scroll_element": _RESOLVE + """
  if (!el) return { found: false };
  el.scrollIntoView({ behavior: __args.behavior, block: 'center' });
  return { found: true, scrollX: window.scrollX, scrollY: window.scrollY };
""",
    "scroll_window": """
  window.scrollTo({ left: __args.x, top: __args.y, behavior: __args.behavior });
  return { found: true, scrollX: window.scrollX, scrollY: window.scrollY };
""",
    "inspect_element": _RESOLVE + """
  if (!el) return { found: false };
  const properties = {};
  const errors = {};
  for (const name of __args.properties) {
    if (name in el) {
      const value = el[name];
      properties[name] = (value === null || ['string', 'number', 'boolean'].includes(typeof value))
        ? value : String(value);
    } else if (el.hasAttribute(name)) {
      properties[name] = el.getAttribute(name);
    } else {
      errors[name] = 'unknown property';
    }
  }
  return { found: true, tagName: el.tagName.toLowerCase(), properties, errors };
""",
    "computed_styles": _RESOLVE + """
  if (!el) return { found: false };
  const style = window.getComputedStyle(el);
  const properties = {};
  const errors = {};
  for (const name of __args.properties) {
    const value = style.getPropertyValue(name);
    if (value === '' && !(name in style) && !name.startsWith('--')) {
      errors[name] = 'unknown style property';
    } else {
      properties[name] = value;
    }
  }
  return { found: true, properties, errors };
""",
    "element_bounds": _VISIBLE + _RESOLVE + """
  if (!el) return { found: false };
  const rect = el.getBoundingClientRect();
  return {
    found: true,
    visible: isVisible(el),
    bounds: { x: rect.left, y: rect.top, width: rect.width, height: rect.height },
    center: { x: rect.left + rect.width / 2, y: rect.top + rect.height / 2 }
  };
""",
    "page_info": """
  return {
    url: location.href,
    title: document.title,
    readyState: document.readyState,
    viewport: { width: window.innerWidth, height: window.innerHeight },
    scroll: { x: window.scrollX, y: window.scrollY }
  };
""",
}


def build_script(name: str, **args) -> str:
    body = _BODIES[name]
    return (
        "(() => {\n"
        f"  // logbridge:{name}\n"
        f"  const __args = {json.dumps(args)};\n"
        f"{body}"
        "})()"
    )
