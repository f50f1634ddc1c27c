"""Document builders and transports shared by the test modules."""

import httpx


def http_item(url, item_id=None, **config):
    item = {"type": "http", "config": {"url": url, **config}}
    if item_id:
        item["id"] = item_id
    return item


def static_item(data, item_id=None):
    item = {"type": "static", "config": {"data": data}}
    if item_id:
        item["id"] = item_id
    return item


def document(component_id, *sources, **extra):
    return {"componentId": component_id, "version": "2.0.0", "dataSources": list(sources), **extra}


def source(source_id, *entries, merge=None, **extra):
    data_items = [entry if "item" in entry else {"item": entry} for entry in entries]
    result = {"sourceId": source_id, "dataItems": data_items, **extra}
    if merge is not None:
        result["mergeStrategy"] = merge
    return result


class RecordingTransport(httpx.MockTransport):
    """MockTransport that remembers every request it served."""

    def __init__(self, handler):
        self.requests = []

        def _record(request):
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)

    def paths(self):
        return [r.url.path for r in self.requests]
