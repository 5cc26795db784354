# console.py
"""Interactive mark / check loop on stdin."""
from .errors import (
    WatermarkError,
    MalformedKeyError,
    ModelNotFoundError,
    ParseError,
    SaveError,
    InsufficientCapacityError,
    InsufficientVerticesError,
    MissingAttributeError,
)
from .watermark import KeySpec, mark_file, verify_file

MENU = (
    "***Watermarking 3D Models.glb***\n"
    "Entry:\n"
    "\t1 if you want mark model\n"
    "\t0 if you want check model\n"
    "\te if you want to exit"
)

# distinct label per failure category
ERROR_LABELS = (
    (MalformedKeyError, "Invalid key"),
    (ModelNotFoundError, "File not found"),
    (ParseError, "Failed to parse glTF"),
    (SaveError, "Failed to save model"),
    (InsufficientCapacityError, "Insufficient mesh capacity"),
    (InsufficientVerticesError, "Insufficient vertices"),
    (MissingAttributeError, "Invalid attribute of vertex"),
)


def describe_error(exc: WatermarkError) -> str:
    for cls, label in ERROR_LABELS:
        if isinstance(exc, cls):
            return f"{label}: {exc}"
    return f"Error: {exc}"


def run_once(marking: bool, model_filename: str, key_string: str) -> str:
    """One mark or check run. Returns the message to show the user."""
    key = KeySpec.parse(key_string)
    if marking:
        mark_file(model_filename, key)
        return "Model marked!"
    if verify_file(model_filename, key):
        return "Verification Confirmed"
    return "Watermark violate!"


def main(read=input, write=print):
    while True:
        write(MENU)
        try:
            param = read().strip()
        except EOFError:
            break
        if param.lower() == 'e':
            break
        if param not in ('1', '0'):
            write("Undefined input")
            continue

        try:
            write("Entry path to file (with extension): ")
            model_filename = read().lstrip()
            write("Entry steganography key: ")
            key_string = read()
        except EOFError:
            break

        try:
            write(run_once(param == '1', model_filename, key_string))
        except WatermarkError as e:
            write(describe_error(e))
        write("\n")
    write("Program terminated")
