import re
from collections import defaultdict
from threading import Lock

LabelKey = tuple[tuple[str, str], ...]


def _normalize_labels(labels: dict[str, str] | None) -> LabelKey:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _sanitize_metric_name(name: str) -> str:
    clean = re.sub(r"[^a-zA-Z0-9_:]", "_", name)
    if not re.match(r"^[a-zA-Z_:]", clean):
        clean = f"metric_{clean}"
    return clean


def _escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class AuthMetrics:
    """Labelled in-process counters, one registry per application container."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, dict[LabelKey, int]] = defaultdict(dict)

    def increment(self, name: str, value: int = 1, **labels: str) -> None:
        key = _normalize_labels(labels)
        with self._lock:
            self._counters[name][key] = self._counters[name].get(key, 0) + int(value)

    def value(self, name: str, **labels: str) -> int:
        with self._lock:
            return self._counters.get(name, {}).get(_normalize_labels(labels), 0)

    def snapshot(self) -> dict[str, list[dict]]:
        with self._lock:
            return {
                metric_name: [
                    {"labels": dict(label_key), "value": value}
                    for label_key, value in items.items()
                ]
                for metric_name, items in self._counters.items()
            }

    def prometheus_text(self) -> str:
        lines: list[str] = []
        with self._lock:
            for raw_name, items in sorted(self._counters.items(), key=lambda x: x[0]):
                name = _sanitize_metric_name(raw_name)
                lines.append(f"# TYPE {name} counter")
                for label_key, value in items.items():
                    if label_key:
                        labels = ",".join(f'{k}="{_escape_label_value(v)}"' for k, v in label_key)
                        lines.append(f"{name}{{{labels}}} {int(value)}")
                    else:
                        lines.append(f"{name} {int(value)}")
        return "\n".join(lines) + "\n"
