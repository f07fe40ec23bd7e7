FNV32_OFFSET_BASIS = 0x811C9DC5
FNV32_PRIME = 0x01000193

# (pod style, container style) pairs understood by rich
PALETTE: tuple[tuple[str, str], ...] = (
    ("bright_cyan", "cyan"),
    ("bright_green", "green"),
    ("bright_magenta", "magenta"),
    ("bright_yellow", "yellow"),
    ("bright_blue", "blue"),
    ("bright_red", "red"),
)


def fnv32(data: bytes) -> int:
    value = FNV32_OFFSET_BASIS
    for byte in data:
        value = (value * FNV32_PRIME) & 0xFFFFFFFF
        value ^= byte
    return value


def color_index(name: str) -> int:
    return fnv32(name.encode()) % len(PALETTE)


def determine_colors(
    pod_name: str, container_name: str, *, diff_container: bool = False
) -> tuple[str, str]:
    pod_style, container_style = PALETTE[color_index(pod_name)]
    if diff_container:
        container_style = PALETTE[color_index(container_name)][1]
    return pod_style, container_style
