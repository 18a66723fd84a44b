import re


# static %%NNNN -> text table. ids can overlap between providers,
# this table keeps the Security log meaning.
MESSAGES = {
    # logon / authentication
    "%%1963": "An account was successfully logged on.",
    "%%1964": "An account failed to log on.",
    "%%2048": "The logon attempt was made using explicit credentials.",

    # elevation levels
    "%%1936": "TokenElevationTypeDefault (1)",
    "%%1937": "TokenElevationTypeFull (2)",
    "%%1938": "TokenElevationTypeLimited (3)",

    # impersonation levels
    "%%1832": "Identification",
    "%%1833": "Impersonation",
    "%%1840": "Delegation",
    "%%1841": "Anonymous",

    # logon types
    "%%1842": "Interactive",
    "%%1843": "Network",
    "%%1844": "Batch",
    "%%1845": "Service",
    "%%1850": "RemoteInteractive",

    # privileges
    "%%1601": "SeAssignPrimaryTokenPrivilege",
    "%%1603": "SeTcbPrivilege",
    "%%1605": "SeSecurityPrivilege",
    "%%1608": "SeSystemtimePrivilege",
    "%%1612": "SeDebugPrivilege",
}


MESSAGE_ID_RE = re.compile(r"%%\d+")


def lookup_message(msg_id):
    """
    @type msg_id: str
    @rtype: str
    @return: the message text, or the id itself when it is unknown.
    """
    return MESSAGES.get(msg_id, msg_id)


def resolve_message(text):
    """
    Replace every `%%NNNN` reference in the given text with its message.
    """
    if not text or "%%" not in text:
        return text
    return MESSAGE_ID_RE.sub(lambda m: lookup_message(m.group()), text)
