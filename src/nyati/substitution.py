"""${token} substitution for task commands, directories and messages."""

from typing import Mapping

APPNAME_TOKEN = "${appname}"
RELEASE_VERSION_TOKEN = "${release_version}"


def substitute(
    template: str,
    params: Mapping[str, str],
    appname: str,
    release_version: int,
) -> str:
    """Replace ${key} placeholders in a template.

    User parameters are replaced first, then the built-ins ${appname} and
    ${release_version}. A parameter named like a built-in is therefore
    shadowed by the built-in value. Unknown tokens are left as they are.

    Args:
        template: String containing ${...} placeholders
        params: User-defined parameters
        appname: Value for ${appname}
        release_version: Value for ${release_version}

    Returns:
        The substituted string

    Example:
        >>> substitute("Deploy ${appname} to ${env}", {"env": "prod"}, "myapp", 1)
        'Deploy myapp to prod'
    """
    if not template:
        return template

    output = template
    for key, value in params.items():
        if key in ("appname", "release_version"):
            continue
        output = output.replace("${%s}" % key, value)
    output = output.replace(APPNAME_TOKEN, appname)
    output = output.replace(RELEASE_VERSION_TOKEN, str(release_version))
    return output
