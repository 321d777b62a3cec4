# This module owns the active conversation

# +---------------------+
# |   Message log       |   (Append-only, addressed by handles)
# |---------------------|
# | Settled messages    |
# | Streaming reply     |
# | Suggestions         |
# +---------------------+

# +---------------------+
# |  Workflow pointer   |   (Current step of the guided sequence)
# |---------------------|
# | Workflow type       |
# | Step index          |
# | Step artifacts      |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |          Snapshot            |   (Handed to the repository)
# |------------------------------|
# | Title                        |
# | Settled messages only        |
# | Workspace context snapshot   |
# | Workflow pointer             |
# +------------------------------+
#         |
#         v
#   [nova_conversations row]
