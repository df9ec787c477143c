"""Team coordination: tasks, mailbox, dispatch and scaling."""
