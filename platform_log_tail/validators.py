import trafaret as t


WATCH_EVENT_TYPES = ("ADDED", "MODIFIED", "DELETED", "BOOKMARK", "ERROR")
LABEL_SELECTOR_OPERATORS = ("=", "==", "!=", "in", "notin", "exists", "!")

# https://kubernetes.io/docs/concepts/overview/working-with-objects/labels/#syntax-and-character-set
LABEL_KEY_RE = (
    r"^([a-z0-9]([-a-z0-9.]*[a-z0-9])?/)?[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$"
)
LABEL_VALUE_RE = r"^([A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?)?$"


def create_watch_event_validator() -> t.Trafaret:
    return t.Dict(
        {
            t.Key("type"): t.Enum(*WATCH_EVENT_TYPES),
            t.Key("object"): t.Dict().allow_extra("*"),
        }
    ).allow_extra("*")


def create_label_requirement_validator() -> t.Trafaret:
    return t.Dict(
        {
            t.Key("key"): t.Regexp(LABEL_KEY_RE),
            t.Key("operator"): t.Enum(*LABEL_SELECTOR_OPERATORS),
            t.Key("values", optional=True, default=[]): t.List(
                t.Regexp(LABEL_VALUE_RE)
            ),
        }
    )
