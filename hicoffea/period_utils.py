import json
import logging

# Mapping of data-taking periods to collision system and centre-of-mass energy (GeV)
PERIOD_MAPPING = {
    "pp_13p6TeV": {"system": "pp", "sqrt_s": 13600.0},
    "pp_5p36TeV": {"system": "pp", "sqrt_s": 5360.0},
    "OO_5p36TeV": {"system": "OO", "sqrt_s": 5360.0},
    "NeNe_5p36TeV": {"system": "NeNe", "sqrt_s": 5360.0},
    "PbPb_5p36TeV": {"system": "PbPb", "sqrt_s": 5360.0},
    "ALICE3_pp_14TeV": {"system": "pp", "sqrt_s": 14000.0},
}


def get_period_details(period):
    """
    Retrieves the collision system and sqrt(s) associated with a given period.
    """
    mapping = PERIOD_MAPPING.get(period)
    if mapping is None:
        raise ValueError(f"Unsupported period: {period}. Valid periods: {sorted(PERIOD_MAPPING)}")

    return mapping["system"], mapping["sqrt_s"], period


def load_json(filepath):
    """
    Load JSON data from the specified file.
    """
    try:
        with open(filepath, 'r', encoding='utf-8') as file:
            data = json.load(file)
            logging.info(f"Successfully loaded JSON file: {filepath}")
            return data
    except Exception as e:
        raise RuntimeError(f"Failed to read JSON file {filepath}: {e}") from e
